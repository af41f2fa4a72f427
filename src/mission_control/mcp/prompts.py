"""MCP prompt templates for common workflows."""

from mission_control.mcp.server import mcp


@mcp.prompt()
def plan_task(task_id: str) -> str:
    """Generate a prompt to walk a task through its planning conversation."""
    return (
        f"Please plan task '{task_id}' with me.\n\n"
        f"1. Use get_planning_state to see whether planning has started.\n"
        f"2. If not, use start_planning. If a turn is awaiting a reply, use poll_planning "
        f"or retry_planning.\n"
        f"3. Show me each question with its options and wait for my choice, then pass it "
        f"to answer_planning_question (use 'other' with other_text for free-form answers).\n"
        f"4. When planning completes, summarize the task spec, the suggested agents and the "
        f"execution plan."
    )


@mcp.prompt()
def triage_inbox(workspace: str = "default") -> str:
    """Generate a prompt to triage the inbox of a workspace."""
    return (
        f"Please triage the inbox for the '{workspace}' workspace.\n\n"
        f"Use list_tasks with status='inbox' and list_agents, then:\n"
        f"1. Flag tasks that are too vague and should be planned first\n"
        f"2. Suggest an agent for each well-defined task, preferring agents on standby\n"
        f"3. Point out urgent or high priority tasks that are still unassigned\n"
        f"4. Ask me before calling assign_task for anything"
    )


@mcp.prompt()
def review_task(task_id: str) -> str:
    """Generate a prompt to review work waiting for approval."""
    return (
        f"Please review the work done for task '{task_id}'.\n\n"
        f"Use get_task to see the task details, its planning spec and its history.\n"
        f"Then provide:\n"
        f"1. Whether the deliverables and success criteria from the task spec appear to be met\n"
        f"2. Any issues or concerns\n"
        f"3. Whether it's ready to move from review to done (only a master agent can approve)"
    )


@mcp.prompt()
def status_report(workspace: str = "default") -> str:
    """Generate a prompt for a workspace status report."""
    return (
        f"Please generate a status report for the '{workspace}' workspace.\n\n"
        f"Use list_tasks and list_agents, then provide:\n"
        f"1. Task counts per status\n"
        f"2. Which agents are working and on what\n"
        f"3. Tasks stuck in planning or review\n"
        f"4. Recommended next steps"
    )
