"""Deployment infrastructure for saanify-ops."""

from .changes import ChangeAnalyzer, ChangeSet
from .control import ACTIONS, MasterControl
from .deployment import STEP_NAMES, DeploymentOrchestrator, DeploymentRun, PipelineStep, StepStatus
from .environment import EnvironmentSync
from .migrations import MIGRATIONS, MigrationRunner
from .trigger import DeployTrigger

__all__ = [
    "ACTIONS",
    "MIGRATIONS",
    "STEP_NAMES",
    "ChangeAnalyzer",
    "ChangeSet",
    "DeployTrigger",
    "DeploymentOrchestrator",
    "DeploymentRun",
    "EnvironmentSync",
    "MasterControl",
    "MigrationRunner",
    "PipelineStep",
    "StepStatus",
]
