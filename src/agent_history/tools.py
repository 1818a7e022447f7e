"""Canonical tool names shared by every provider.

Messages are rendered by tool name, so provider-specific names are mapped onto
the Claude Code vocabulary (``Edit``, ``Bash``, ``Read`` ...). Unknown names
pass through unchanged.
"""

_CANONICAL = {
    # edits
    "apply_patch": "Edit",
    "applypatch": "Edit",
    "edit": "Edit",
    "edit_file": "Edit",
    "search_replace": "Edit",
    "strreplace": "Edit",
    # shell
    "shell": "Bash",
    "shell_command": "Bash",
    "run_terminal_cmd": "Bash",
    "run_terminal_command": "Bash",
    "bash": "Bash",
    # files
    "read_file": "Read",
    "readfile": "Read",
    "read": "Read",
    "write": "Write",
    "write_file": "Write",
    "create_file": "Write",
    "delete_file": "Delete",
    "list_dir": "LS",
    "ls": "LS",
    # search
    "grep": "Grep",
    "grep_search": "Grep",
    "codebase_search": "Grep",
    "glob": "Glob",
    "glob_file_search": "Glob",
    "file_search": "Glob",
    "web_search": "WebSearch",
    "websearch": "WebSearch",
    "web_fetch": "WebFetch",
    # planning
    "todo_write": "TodoWrite",
    "todowrite": "TodoWrite",
    "update_plan": "TodoWrite",
}


def canonical_tool_name(name: str) -> str:
    """Map a provider tool name to its cross-provider canonical name."""
    if not name:
        return "unknown"
    return _CANONICAL.get(name.lower(), name)


def patch_to_edit(patch: str) -> dict:
    """Translate an apply-patch body into the ``Edit`` tool's input shape.

    Lines starting with ``-``/``+`` (except ``---``/``+++`` headers) become the
    removed and added text; the first ``*** Update File:`` / ``*** Add File:``
    header names the file.
    """
    file_path = "unknown"
    old_lines = []
    new_lines = []

    for line in patch.split("\n"):
        if file_path == "unknown":
            for header in ("*** Update File:", "*** Add File:", "*** Delete File:"):
                if line.startswith(header):
                    file_path = line[len(header):].strip() or "unknown"
                    break
        if line.startswith("-") and not line.startswith("---"):
            old_lines.append(line[1:])
        elif line.startswith("+") and not line.startswith("+++"):
            new_lines.append(line[1:])

    return {
        "file_path": file_path,
        "old_string": "\n".join(old_lines),
        "new_string": "\n".join(new_lines),
    }
