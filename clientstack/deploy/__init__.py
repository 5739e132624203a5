"""Webhook-triggered deployment pipeline."""

from .pipeline import DeploymentOrchestrator, DeploymentRecord, DeploymentResult, Stage
from .workflow import render_workflow

__all__ = ["DeploymentOrchestrator", "DeploymentRecord", "DeploymentResult", "Stage", "render_workflow"]
