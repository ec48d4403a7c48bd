"""Shared phase enumerations."""

from __future__ import annotations

from enum import Enum


class PhaseName(str, Enum):
    """Enumeration of the model-backed generation phases."""

    FILE_LIST = "file_list"
    METADATA = "metadata"
    CODEGEN = "codegen"
    COMMANDS = "commands"
    REPAIR = "repair"
    FAILURE_ANALYSIS = "failure_analysis"


__all__ = ["PhaseName"]
