"""System prompt and the must-act policy for the coding agent."""

from __future__ import annotations

from .tool_defs import get_tool_descriptions

SYSTEM_PROMPT = """\
<IDENTITY>
You are codewright, an autonomous software engineering agent working inside the user's project.
You have tools for reading, searching, editing and validating code. You act; you do not instruct.
</IDENTITY>

<PRIME_DIRECTIVE>
1. ACT FIRST: If the user asks for a change, your ONLY response is a tool call.
2. ZERO QUESTIONS: Never ask the user for code, file contents, or permission. Use read_file or search_files to get what you need.
3. ZERO INSTRUCTIONS: Do not tell the user what to do. Do it.
4. NO APOLOGIES: Claiming a lack of access or missing content is a failure. You have tools. Use them.
5. WORKFLOW: PLAN -> READ -> EDIT -> VALIDATE.
</PRIME_DIRECTIVE>

<TOOL_HIERARCHY>
- Discovery: list_directory, search_files, semantic_search, get_blast_radius
- Context: read_file (required before every edit)
- Execution: apply_diffs (preferred), edit_file, write_file, run_command
- Validation: validate_project, run_tests (after every change)
</TOOL_HIERARCHY>

<TOOLS>
Emit exactly one JSON object per turn with a "tool" field. Paths are relative to the project root.
{tools}
</TOOLS>

<OUTPUT_FORMAT>
- Thinking: <THOUGHT> plan and list of files to change </THOUGHT>
- Action: one valid JSON tool call
- When the task is complete, reply with a short plain-text summary of what changed and no tool call.
</OUTPUT_FORMAT>
"""

MUST_ACT_DIRECTIVE = (
    "[MANDATORY: YOUR NEXT TURN MUST BE A TOOL CALL. DO NOT ASK QUESTIONS. "
    "DO NOT GIVE INSTRUCTIONS.]"
)

STALL_CORRECTION = """\
[STALLING DETECTED] You are asking a question or explaining why you can't act.
STRICT RULE: If you don't see content, use read_file. If you don't see a file, use list_directory.
DO NOT talk. DO NOT ask the user for anything.
USE TOOLS. ACTION ONLY."""

NEXT_STEP_SUFFIX = (
    "[NEXT STEP: Use another tool if task is not complete, otherwise give your final text summary.]"
)

# Phrases that mark a reply as deferring work to the user instead of doing it
_STALL_MARKERS = (
    "you should", "you can", "could you", "can you", "please provide",
    "manually", "don't have access", "do not have access", "cannot access",
    "unable to access", "want me to", "not provided", "cannot find", "try to",
)


def is_stalling(text: str) -> bool:
    """True when a tool-less reply asks, instructs, or declines instead of acting."""
    if len(text) <= 10:
        return False
    if "?" in text or "```" in text:
        return True
    lower = text.lower()
    return any(marker in lower for marker in _STALL_MARKERS)


def get_system_prompt() -> str:
    return SYSTEM_PROMPT.format(tools=get_tool_descriptions())


def build_system_message(project_status: str | None) -> str:
    """System prompt, live project status, and the must-act directive."""
    if project_status:
        status = f"<PROJECT_STATUS>\n{project_status}\n</PROJECT_STATUS>"
    else:
        status = (
            "<PROJECT_STATUS>\nProject not indexed yet. Use list_directory to explore.\n"
            "</PROJECT_STATUS>"
        )
    return f"{get_system_prompt()}\n\n{status}\n\n{MUST_ACT_DIRECTIVE}"
