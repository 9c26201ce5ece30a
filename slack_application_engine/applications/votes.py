"""Vote threshold, reaction tally and eligible reviewer lookup."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, Sequence, Set, Tuple

import structlog

from slack_application_engine.platform import ChatPlatform

from .models import STATUS_ACCEPTED, STATUS_DENIED, VoteRule

ACCEPT_EMOJI = "white_check_mark"
DENY_EMOJI = "x"
REVIEWER_CACHE_TTL_SECONDS = 5 * 60


@dataclass(frozen=True)
class VoteThreshold:
    rule: VoteRule
    ratio_threshold: int
    threshold: int


@dataclass(frozen=True)
class VoteSnapshot:
    yes_count: int
    no_count: int
    voided_user_ids: FrozenSet[str] = frozenset()


def format_vote_rule(rule: VoteRule | None) -> str:
    rule = rule or VoteRule()
    return f"{rule.numerator}/{rule.denominator} (min {rule.minimum_votes})"


def compute_vote_threshold(eligible_count: int, rule: VoteRule | None = None) -> VoteThreshold:
    """Return the number of votes a side needs for *eligible_count* reviewers."""

    rule = rule or VoteRule()
    ratio_threshold = math.ceil(max(eligible_count, 0) * rule.numerator / rule.denominator)
    return VoteThreshold(
        rule=rule,
        ratio_threshold=ratio_threshold,
        threshold=max(rule.minimum_votes, ratio_threshold),
    )


def tally_votes(
    accept_user_ids: Iterable[str],
    deny_user_ids: Iterable[str],
    eligible_user_ids: Iterable[str],
) -> VoteSnapshot:
    """Count eligible voters per side; a voter on both sides counts for neither."""

    eligible = set(eligible_user_ids)
    yes = {user for user in accept_user_ids if user in eligible}
    no = {user for user in deny_user_ids if user in eligible}
    voided = yes & no
    return VoteSnapshot(
        yes_count=len(yes - voided),
        no_count=len(no - voided),
        voided_user_ids=frozenset(voided),
    )


def decide(snapshot: VoteSnapshot, threshold: VoteThreshold) -> str | None:
    yes_met = snapshot.yes_count >= threshold.threshold
    no_met = snapshot.no_count >= threshold.threshold
    if yes_met and no_met:
        return None
    if yes_met:
        return STATUS_ACCEPTED
    if no_met:
        return STATUS_DENIED
    return None


class ReviewerDirectory:
    """Resolve eligible reviewers for a channel, caching platform lookups."""

    def __init__(
        self,
        platform: ChatPlatform,
        *,
        ttl_seconds: float = REVIEWER_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._platform = platform
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: Dict[Tuple[str, Tuple[str, ...]], Tuple[float, FrozenSet[str]]] = {}

    def eligible_reviewers(self, channel_id: str, voter_group_ids: Sequence[str] = ()) -> FrozenSet[str]:
        """Human channel members, restricted to the voter groups when any are configured."""

        key = (channel_id, tuple(sorted(set(voter_group_ids))))
        now = self._clock()
        with self._lock:
            cached = self._cache.get(key)
            if cached and now - cached[0] < self._ttl:
                return cached[1]

        reviewers: Set[str] = {
            member.user_id for member in self._platform.fetch_channel_members(channel_id) if not member.is_bot
        }
        if key[1]:
            allowed: Set[str] = set()
            for group_id in key[1]:
                allowed.update(self._platform.fetch_user_group_members(group_id))
            reviewers &= allowed

        result = frozenset(reviewers)
        with self._lock:
            self._cache[key] = (now, result)
        structlog.get_logger().bind(channel=channel_id).debug(
            "reviewers_refreshed",
            eligible_count=len(result),
            voter_groups=list(key[1]),
        )
        return result

    def invalidate(self, channel_id: str | None = None) -> None:
        with self._lock:
            if channel_id is None:
                self._cache.clear()
                return
            for key in [key for key in self._cache if key[0] == channel_id]:
                del self._cache[key]
