from app.automation.models import Workflow, WorkflowAssignmentCursor, WorkflowRun, WorkflowStep

__all__ = ["Workflow", "WorkflowAssignmentCursor", "WorkflowRun", "WorkflowStep"]
