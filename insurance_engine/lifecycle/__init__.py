"""
Lifecycle module.

LifecycleController is the single writer of contract state; InsuranceService
is the user-facing entry point that creates contracts and requests cancels.
"""
from insurance_engine.lifecycle.controller import LifecycleController
from insurance_engine.lifecycle.service import InsuranceService

__all__ = [
    "LifecycleController",
    "InsuranceService",
]
