"""MCP prompt templates for common workflows."""

from wave_orchestrator.mcp.server import mcp


@mcp.prompt()
def plan_wave(goal: str = "") -> str:
    """Generate a prompt to plan and start the next wave of workers."""
    focus = f"The focus for this wave is:\n\n{goal}\n\n" if goal else ""
    return (
        f"I want to start the next wave of parallel workers.\n\n"
        f"{focus}"
        f"Please:\n"
        f"1. Use plan_wave to batch the ready items by likely file overlap\n"
        f"2. Review the overlaps and tell me if any batch looks wrong\n"
        f"3. Use resolve_item on each head to confirm its skills and quality gates\n"
        f"4. Use dispatch_wave to spawn one worker per batch head\n"
        f"5. Summarize what is running now and what waits for a later wave"
    )


@mcp.prompt()
def wave_done(item_ids: str) -> str:
    """Generate a prompt to finish a wave once its workers are done."""
    return (
        f"The workers for these items look finished: {item_ids}\n\n"
        f"Please:\n"
        f"1. Use poll_workers to confirm none of them is still working or asking a question\n"
        f"2. Use run_gates for each item and report any gate that did not pass\n"
        f"3. Use complete_wave with the items whose gates passed\n"
        f"4. Report merged items, merge conflicts, and the suggested next steps from the summary"
    )
