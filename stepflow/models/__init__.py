"""
Flow document models.
"""

from .flow import Flow, GrpcStep, MongoStep, Step, StepKind, classify_step

__all__ = [
    "Flow",
    "GrpcStep",
    "MongoStep",
    "Step",
    "StepKind",
    "classify_step",
]
