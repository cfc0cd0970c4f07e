"""
Recovery mode state machine definitions.

This module defines the connector's recovery modes and the allowed
transitions between them. It is passive and validation-only; the
RecoveryCoordinator consults it before every mode change.
"""

from __future__ import annotations

LIVE: str = "live"
RECOVERING: str = "recovering"
FAILED: str = "failed"

# Terminal modes: once reached, the coordinator for this run is done.
RECOVERY_TERMINAL_MODES: frozenset[str] = frozenset({FAILED})


# Allowed mode transitions.
#
# Key   : previous mode (or None before startup)
# Value : set of allowed next modes
#
# Notes:
# - Startup picks LIVE when no checkpoint exists, RECOVERING otherwise.
# - RECOVERING ends in LIVE after the last persisted batch is replayed.
# - A replay failure is fatal for the run (FAILED).
RECOVERY_ALLOWED_TRANSITIONS: dict[str | None, frozenset[str]] = {
    None: frozenset({LIVE, RECOVERING}),

    RECOVERING: frozenset(
        {
            LIVE,
            FAILED,
        }
    ),

    LIVE: frozenset(),
}


def is_terminal_mode(mode: str) -> bool:
    """Return True if the given mode is terminal."""
    return mode in RECOVERY_TERMINAL_MODES


def is_valid_transition(prev_mode: str | None, next_mode: str) -> bool:
    """Return True if the transition prev_mode -> next_mode is allowed."""
    allowed = RECOVERY_ALLOWED_TRANSITIONS.get(prev_mode)
    if allowed is None:
        return False
    return next_mode in allowed
