"""
tool_guard.py - Read-only tool set resolution and shell command screening

Plan mode works by SHRINKING the active tool list, the same trick as
removing write_file from the tool list in planning mode: the model cannot
call what it cannot see. This module decides what that shrunken list is,
remembers what to put back afterwards, and screens bash commands, since
bash stays available for inspection (ls, grep, git log) but must not be
able to change anything.

    active:     [edit, bash, read]
    candidates: [read, bash, grep, ...] & registry   -> [read, bash]
    exit plan:  restore snapshot                      -> [edit, bash, read]
"""

import re
import shlex

PLAN_TOOL_CANDIDATES = (
    "read",
    "bash",
    "grep",
    "find",
    "ls",
    "lsp",
    "ast_search",
    "web_search",
    "fetch_content",
    "get_search_content",
)

WRITE_LIKE_TOOLS = frozenset({"edit", "write", "ast_rewrite"})

SHELL_TOOL = "bash"


# =============================================================================
# Tool set snapshot / resolve / restore
# =============================================================================

def _dedupe(names) -> list[str]:
    seen = set()
    result = []
    for name in names:
        if name not in seen:
            seen.add(name)
            result.append(name)
    return result


def resolve_read_only_tools(candidates, available, active) -> list[str]:
    """
    Tools allowed while planning.

    Preferred: candidates the registry actually offers, in candidate order.
    Fallback: whatever is active now minus the write-like tools. May be
    empty, which the caller must treat as "cannot enter plan mode".
    """
    available_set = set(available)
    plan_tools = _dedupe(name for name in candidates if name in available_set)
    if plan_tools:
        return plan_tools
    return _dedupe(name for name in active if name not in WRITE_LIKE_TOOLS)


def snapshot_tools(active) -> list[str] | None:
    """Copy of the active tools, or None when the host reports no restriction."""
    active = list(active or [])
    return active if active else None


def tools_to_restore(snapshot, all_available) -> list[str]:
    """The snapshot when there is one, otherwise every registered tool."""
    if snapshot:
        return list(snapshot)
    return list(all_available)


# =============================================================================
# Shell command screening
# =============================================================================

# Programs that only inspect. Every command segment must start with one.
READ_ONLY_PROGRAMS = {
    "ls", "ll", "la", "tree", "pwd", "cat", "head", "tail", "less", "more",
    "wc", "file", "stat", "du", "df", "grep", "egrep", "fgrep", "rg", "ag",
    "ack", "find", "fd", "locate", "which", "whereis", "type", "echo",
    "printf", "sort", "uniq", "cut", "tr", "diff", "cmp", "column", "nl",
    "basename", "dirname", "realpath", "readlink", "date", "whoami", "id",
    "uname", "hostname", "printenv", "ps", "free", "uptime", "jq", "awk",
    "sed", "git", "npm", "pnpm", "yarn", "pip", "python", "python3", "node",
    "cargo", "go", "true", "false", "test", "[",
}

# Programs that can also mutate: only these subcommands are allowed.
READ_ONLY_SUBCOMMANDS = {
    "git": {
        "status", "log", "diff", "show", "branch", "tag", "blame", "grep",
        "ls-files", "ls-tree", "rev-parse", "describe", "shortlog", "remote",
        "reflog", "cat-file", "whatchanged",
    },
    "npm": {"ls", "list", "view", "outdated", "--version", "-v"},
    "pnpm": {"ls", "list", "outdated", "--version"},
    "yarn": {"list", "info", "why", "--version"},
    "pip": {"list", "show", "freeze", "--version"},
    "cargo": {"tree", "metadata", "--version"},
    "go": {"list", "version", "doc"},
    "python": {"--version", "-V"},
    "python3": {"--version", "-V"},
    "node": {"--version", "-v"},
}

# Flags that turn an inspection program into a mutating one.
MUTATING_FLAGS = {
    "find": {
        "-delete", "-exec", "-execdir", "-ok", "-okdir",
        "-fprint", "-fprint0", "-fprintf", "-fls",
    },
    "sed": {"--in-place"},
    "sort": {"-o", "--output"},
    "tree": {"-o"},
    "git": {"--output"},
}

# uniq options that consume the following word
UNIQ_VALUE_FLAGS = {"-f", "-s", "-w"}

# sed `w`/`W` commands, the `s///w` flag and `e` (run a shell command)
SED_WRITE_OR_EXEC = re.compile(r"(?:^|[;{}\n/,!$=\d\s])[gpiIeEmM\d]*[wWe](?:\s|$)")

GIT_REF_MUTATING_FLAGS = {
    "-d", "-D", "-m", "-M", "-c", "-C", "-f", "--delete", "--move", "--copy",
    "--force", "--set-upstream-to", "--unset-upstream", "--edit-description",
}

HARMLESS_REDIRECTS = re.compile(r"\d?>{1,2}\s*/dev/null|\d?>&\d")

UNSAFE_PATTERNS = [
    (r">", "output redirection"),
    (r"\$\(|`", "command substitution"),
    (r"\btee\b", "tee"),
    (r"\bsudo\b", "privilege escalation"),
]

SEGMENT_SPLIT = re.compile(r"\s*(?:&&|\|\||;|\||&|\n)\s*")


def normalize_arg(text: str) -> str:
    """First word of a command argument, lower-cased. '  ON please' -> 'on'."""
    parts = text.strip().split()
    return parts[0].lower() if parts else ""


def _flag_used(arg: str, flag: str) -> bool:
    if arg == flag or arg.startswith(flag + "="):
        return True
    # Short option, attached value or clustered: `-oout.txt`, `-uo out.txt`
    if len(flag) == 2 and flag[0] == "-" and not arg.startswith("--"):
        return re.match(rf"^-[A-Za-z]*{re.escape(flag[1])}", arg) is not None
    return False


def _uniq_files(args: list[str]) -> list[str]:
    """Positional arguments of a uniq call. A second one is the output file."""
    files = []
    skip = False
    for arg in args:
        if skip:
            skip = False
            continue
        if arg in UNIQ_VALUE_FLAGS:
            skip = True
            continue
        if arg.startswith("-") and arg != "-":
            continue
        files.append(arg)
    return files


def _git_is_safe(args: list[str]) -> bool:
    sub = args[0]
    if sub not in {"branch", "tag", "remote"}:
        return True
    flags = [a.split("=", 1)[0] for a in args[1:] if a.startswith("-")]
    positional = [a for a in args[1:] if not a.startswith("-")]
    if sub == "remote":
        return not positional or positional[0] == "show"
    if any(flag in GIT_REF_MUTATING_FLAGS for flag in flags):
        return False
    # `git branch foo` creates a branch, `git branch --list foo` only filters
    return not positional or any(f in {"--list", "-l", "--contains", "--merged"} for f in flags)


def _segment_is_safe(segment: str) -> bool:
    try:
        words = shlex.split(segment)
    except ValueError:
        return False
    # Leading VAR=value assignments
    while words and re.match(r"^[A-Za-z_][A-Za-z0-9_]*=", words[0]):
        words = words[1:]
    if not words:
        return False

    program = words[0].rsplit("/", 1)[-1]
    if program not in READ_ONLY_PROGRAMS:
        return False

    args = words[1:]
    for flag in MUTATING_FLAGS.get(program, ()):
        if any(_flag_used(arg, flag) for arg in args):
            return False
    if program == "sed":
        if any(re.match(r"^-[a-zA-Z]*i", arg) for arg in args):
            return False
        if any(SED_WRITE_OR_EXEC.search(arg) for arg in args):
            return False
    if program == "uniq" and len(_uniq_files(args)) > 1:
        return False
    if program == "awk" and any("system(" in arg for arg in args):
        return False

    allowed = READ_ONLY_SUBCOMMANDS.get(program)
    if allowed is None or not args:
        return True
    if args[0] not in allowed:
        return False
    if program == "git":
        return _git_is_safe(args)
    return True


def is_safe_readonly_command(command: str) -> bool:
    """
    Heuristic check that a bash command only inspects the workspace.

    Every segment of a pipeline or command list must start with a known
    inspection program, and the command must be free of output redirection
    (other than to /dev/null), command substitution and sudo. Anything not
    recognised is treated as unsafe.
    """
    cmd = (command or "").strip()
    if not cmd:
        return False

    probe = HARMLESS_REDIRECTS.sub("", cmd)
    for pattern, _label in UNSAFE_PATTERNS:
        if re.search(pattern, probe):
            return False

    segments = [s for s in SEGMENT_SPLIT.split(probe) if s.strip()]
    if not segments:
        return False
    return all(_segment_is_safe(segment) for segment in segments)
