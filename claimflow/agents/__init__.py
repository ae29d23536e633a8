# Agents module - stage contracts, intake, simulated collaborators and the orchestrator
from .base import Stage, StageContext, StageCollaborators, FunctionStage
from .confidence import ConfidencePolicy, default_confidence_policy
from .intake import IntakeStage, IntakeResult
from .simulated import simulated_collaborators
from .orchestrator import WorkflowOrchestrator

__all__ = [
    "Stage",
    "StageContext",
    "StageCollaborators",
    "FunctionStage",
    "ConfidencePolicy",
    "default_confidence_policy",
    "IntakeStage",
    "IntakeResult",
    "simulated_collaborators",
    "WorkflowOrchestrator",
]
