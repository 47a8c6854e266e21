from __future__ import annotations

import re
from dataclasses import dataclass

SHORT_OUTPUT_CHARS = 100
TRANSIENT_SIGNATURES = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"connection (reset|refused|aborted|closed)",
        r"ECONNRESET|ECONNREFUSED|ETIMEDOUT|EAI_AGAIN",
        r"timed? ?out",
        r"rate[ _-]?limit",
        r"too many requests",
        r"\b429\b",
        r"\b5\d\d\b",
        r"internal server error|bad gateway|service unavailable|gateway timeout",
        r"overloaded",
        r"network (error|is unreachable)",
        r"no (result|response|output)",
        r"empty (result|response|output)",
    )
)


@dataclass(frozen=True, slots=True)
class AttemptClassification:
    transient: bool
    reason: str = ""


def transient_signature(output: str) -> str | None:
    for pattern in TRANSIENT_SIGNATURES:
        match = pattern.search(output)
        if match:
            return match.group(0)
    return None


def classify_attempt(
    output: str, exit_code: int | None, *, timed_out: bool = False
) -> AttemptClassification:
    """Decide whether one worker attempt should be retried.

    Substantial output with a clean exit is a completed attempt no matter what
    it says; judging it is the quality gates' job.
    """
    if timed_out:
        return AttemptClassification(transient=True, reason="timed out")
    if exit_code != 0:
        return AttemptClassification(transient=True, reason=f"exit status {exit_code}")
    text = output.strip()
    if not text:
        return AttemptClassification(transient=True, reason="empty output")
    if len(text) < SHORT_OUTPUT_CHARS:
        signature = transient_signature(text)
        if signature is not None:
            return AttemptClassification(
                transient=True, reason=f"short output matching '{signature}'"
            )
    return AttemptClassification(transient=False)
