"""Keyword-scored intent classification that selects a pipeline strategy."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

__all__ = [
    "IntentScores",
    "IntentType",
    "detect_intent",
    "enhance_user_intent",
    "is_simple_command",
    "needs_documentation_search",
    "score_intent",
]

LOGGER = logging.getLogger(__name__)


class IntentType(str, Enum):
    CREATE_NEW = "create_new"
    DEBUG_UPGRADE = "debug_upgrade"
    TEST_ONLY = "test_only"


DEBUG_KEYWORDS = (
    "debug", "fix", "repair", "error", "bug", "issue", "problem", "upgrade", "update",
    "improve", "refactor", "modify", "change", "enhance", "optimize", "correct", "resolve", "solve",
)
CREATE_KEYWORDS = (
    "create", "new", "build", "generate", "make", "start", "init", "setup", "scaffold", "bootstrap",
)
TEST_KEYWORDS = (
    "test", "run test", "run tests", "test api", "test endpoint", "test endpoints", "api test",
    "api testing", "test server", "test the", "testing", "test suite", "unit test",
    "integration test", "e2e test", "end to end test", "test coverage", "pytest", "jest",
    "mocha", "npm test", "test command", "execute test",
)
STACKTRACE_INDICATORS = (
    "exception:", "traceback (most recent call last)", "java.lang.", "kotlin.", "org.junit.",
    "assertionerror", "error:", "referenceerror", "typeerror", "syntaxerror",
)
STACKTRACE_BOOST = 3

_SIMPLE_EXECUTABLES = {
    "ls", "cd", "pwd", "cat", "echo", "mkdir", "rm", "cp", "mv", "touch", "git", "pip", "pip3",
    "npm", "npx", "yarn", "node", "python", "python3", "curl", "wget", "grep", "find", "chmod",
    "which", "whoami", "date", "head", "tail", "du", "df", "ps", "kill",
}
_TEST_RUNNER_TOKENS = {"test", "tests", "pytest", "jest", "mocha", "unittest", "vitest"}
_SIMPLE_COMMAND_MAX_TOKENS = 8

_DOC_KEYWORDS = (
    "documentation", "docs", "tutorial", "example", "guide", "how to", "api", "library",
    "framework", "package", "npm", "pip", "crate", "learn", "understand", "reference",
    "specification", "unfamiliar", "first time", "don't know", "latest", "up to date", "modern",
)
_FRAMEWORK_KEYWORDS = (
    "react", "vue", "angular", "svelte", "next", "nuxt", "express", "fastapi", "django",
    "flask", "spring", "tensorflow", "pytorch", "keras", "pandas", "numpy",
)


@dataclass(slots=True, frozen=True)
class IntentScores:
    debug: int
    create: int
    test: int
    stacktrace: bool


def _count_hits(text: str, keywords: Iterable[str]) -> int:
    return sum(1 for keyword in keywords if re.search(r"\b" + re.escape(keyword), text))


def score_intent(user_message: str, memory_summary: str = "") -> IntentScores:
    """Count keyword hits over the message plus memory context."""
    context = f"{user_message} {memory_summary}".lower()
    stacktrace = any(indicator in context for indicator in STACKTRACE_INDICATORS)
    debug = _count_hits(context, DEBUG_KEYWORDS) + (STACKTRACE_BOOST if stacktrace else 0)
    return IntentScores(
        debug=debug,
        create=_count_hits(context, CREATE_KEYWORDS),
        test=_count_hits(context, TEST_KEYWORDS),
        stacktrace=stacktrace,
    )


def is_simple_command(user_message: str) -> bool:
    """True when the message reads like a single shell command rather than a task."""
    tokens = user_message.strip().split()
    if not tokens or len(tokens) > _SIMPLE_COMMAND_MAX_TOKENS:
        return False
    if tokens[0].lower() not in _SIMPLE_EXECUTABLES:
        return False
    return not any(token.lower() in _TEST_RUNNER_TOKENS for token in tokens)


def detect_intent(user_message: str, memory_summary: str, workspace_has_files: bool) -> IntentType:
    """Apply the ordered decision table.

    1. test score > 0, workspace has files, not a simple command -> TEST_ONLY
    2. workspace has files and debug >= create -> DEBUG_UPGRADE
    3. workspace empty and create > debug -> CREATE_NEW
    4. otherwise DEBUG_UPGRADE when files exist, else CREATE_NEW
    """
    scores = score_intent(user_message, memory_summary)
    if scores.test > 0 and workspace_has_files and not is_simple_command(user_message):
        intent = IntentType.TEST_ONLY
    elif workspace_has_files and scores.debug >= scores.create:
        intent = IntentType.DEBUG_UPGRADE
    elif not workspace_has_files and scores.create > scores.debug:
        intent = IntentType.CREATE_NEW
    else:
        intent = IntentType.DEBUG_UPGRADE if workspace_has_files else IntentType.CREATE_NEW
    LOGGER.debug(
        "Intent %s (debug=%d create=%d test=%d stacktrace=%s files=%s)",
        intent.value,
        scores.debug,
        scores.create,
        scores.test,
        scores.stacktrace,
        workspace_has_files,
    )
    return intent


_INTENT_DESCRIPTIONS = {
    IntentType.CREATE_NEW: "creating a new project",
    IntentType.DEBUG_UPGRADE: "debugging or upgrading an existing project",
    IntentType.TEST_ONLY: "testing an existing project",
}


def enhance_user_intent(user_message: str, intent: IntentType, memory_summary: str = "") -> str:
    """Wrap the request with task-type guidance before the first pipeline phase."""
    lines = [
        "=== User Request ===",
        user_message,
        "",
        "=== Context & Guidance ===",
        f"Task Type: {_INTENT_DESCRIPTIONS[intent]}",
        "",
        "Please ensure you understand:",
        "- **Primary Goal**: What should the end result accomplish?",
        "- **Key Requirements**: Which features, constraints, or specifications are mandatory?",
        "- **Best Practices**: Follow the conventions of the stack in use.",
        "- **What to Avoid**: Common pitfalls and anti-patterns.",
        "- **Success Criteria**: How will we verify the project works?",
        "",
        "Consider edge cases and make the implementation functional end to end.",
    ]
    if memory_summary:
        lines.extend(["", "Previous context:", memory_summary])
    return "\n".join(lines)


def needs_documentation_search(user_message: str, memory_summary: str = "") -> bool:
    """Heuristic: does the task likely need documentation or examples first?"""
    message = user_message.lower()
    context = f"{message} {memory_summary.lower()}"
    if _count_hits(context, _DOC_KEYWORDS):
        return True
    mentions_library = any(word in context for word in ("library", "package", "framework", "tool"))
    if _count_hits(context, _FRAMEWORK_KEYWORDS) and mentions_library:
        return True
    return any(phrase in message for phrase in ("how do i", "what is", "show me", "find"))
