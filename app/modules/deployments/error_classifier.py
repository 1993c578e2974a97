"""
Classify raw remote-system errors (Helm, Kubernetes API, kubectl) into short
plain-language messages. Raw text is logged by callers but never shown to
API clients.
"""

from typing import List, Tuple

GENERIC_MESSAGE = "The operation failed due to an internal error. Check the deployment logs or try again."

# First match wins; patterns are matched case-insensitively against the raw text.
_CATEGORIES: List[Tuple[str, Tuple[str, ...], str]] = [
    (
        "timeout",
        ("timed out", "timeout", "deadline exceeded", "etimedout", "i/o timeout"),
        "The operation timed out. The cluster may be busy; try again in a few minutes.",
    ),
    (
        "network",
        ("connection refused", "econnrefused", "no route to host", "network is unreachable",
         "connection reset", "dial tcp", "unable to connect"),
        "Could not reach the cluster. Check connectivity and try again.",
    ),
    (
        "image",
        ("imagepullbackoff", "errimagepull", "pull access denied", "manifest unknown",
         "failed to pull", "repository does not exist", "chart not found", "failed to fetch"),
        "The application image or chart could not be downloaded from its registry.",
    ),
    (
        "quota",
        ("exceeded quota", "forbidden: exceeded", "insufficient cpu", "insufficient memory", "quota"),
        "The workspace does not have enough resources left. Remove something or raise the quota.",
    ),
    (
        "conflict",
        ("cannot re-use a name", "already exists"),
        "A resource with this name already exists in the workspace.",
    ),
    (
        "not_ready",
        ("not ready", "crashloopbackoff", "not yet healthy", "readiness"),
        "The application started but did not become ready in time. Check its logs.",
    ),
]


def classify(raw: str) -> Tuple[str, str]:
    """Return (category, message) for raw error text."""
    text = (raw or "").lower()
    for category, patterns, message in _CATEGORIES:
        if any(p in text for p in patterns):
            return category, message
    return "internal", GENERIC_MESSAGE
