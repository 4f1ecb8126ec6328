"""
Conflict resolution between two edited copies of the same object.
"""

from dataclasses import dataclass
from datetime import datetime

from eds_harmonize.models import Prevalence


@dataclass(frozen=True)
class Decision:
    """Which way(s) content should flow.

    The flags are independent: both may be set, and under the chronology
    policy with identical timestamps neither is.
    """

    push_local: bool
    pull_remote: bool


def decide(
    policy: Prevalence, local_modified_on: datetime, remote_modified_on: datetime
) -> Decision:
    """Map a prevalence policy and two modification times to a push/pull decision."""
    if policy is Prevalence.LOCAL:
        return Decision(push_local=True, pull_remote=False)
    if policy is Prevalence.REMOTE:
        return Decision(push_local=False, pull_remote=True)
    # Chronology: equal timestamps yield no action on either side.
    return Decision(
        push_local=local_modified_on > remote_modified_on,
        pull_remote=remote_modified_on > local_modified_on,
    )


# Used when only one side changed since the last pass; no conflict to resolve.
PUSH_ONLY = Decision(push_local=True, pull_remote=False)
PULL_ONLY = Decision(push_local=False, pull_remote=True)
