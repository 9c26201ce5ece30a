"""Application state machine and decision side-effect orchestration."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable, List

import structlog

from slack_application_engine.platform import ChatPlatform, OutgoingMessage, error_text, mention_user

from .messages import (
    build_acceptance_blocked_notice,
    build_acceptance_retry_notice,
    build_close_notice,
    build_decision_notice,
    build_forced_decision_message,
    build_history_log,
    build_reopen_notice,
    status_color,
)
from .models import (
    STATUS_ACCEPTED,
    STATUS_CLOSED,
    STATUS_DENIED,
    STATUS_PENDING,
    AcceptanceBlock,
    Application,
    LastDecision,
    RoleGrantResult,
    SideEffectResult,
    State,
    VoteContext,
)
from .queue import application_display_id
from .side_effects import (
    FAILED_ERROR,
    FAILED_MEMBER_FETCH_TRANSIENT,
    FAILED_MEMBER_NOT_FOUND,
    FAILED_USER_NOT_RESOLVED,
    SENT,
    SKIPPED_NO_CHANNEL,
    applicant_raw_value,
    grant_approved_roles,
    resolve_applicant_user,
    send_accept_announcement,
    send_deny_dm,
)
from .storage import StateStore
from .templates import (
    DEFAULT_ACCEPT_ANNOUNCE_TEMPLATE,
    DEFAULT_DENY_DM_TEMPLATE,
    build_template_replacements,
    render_template,
)
from .tracks import TrackRegistry
from .votes import (
    ACCEPT_EMOJI,
    DENY_EMOJI,
    ReviewerDirectory,
    compute_vote_threshold,
    decide,
    format_vote_rule,
    tally_votes,
)

SOURCE_VOTE = "vote"
SOURCE_FORCE = "force_command"

UNKNOWN_APPLICATION = "unknown_application"
ALREADY_DECIDED = "already_decided"
ALREADY_PENDING = "already_pending"
ALREADY_CLOSED = "already_closed"
MISSING_MEMBER_NOT_IN_GUILD = "missing_member_not_in_guild"
UNRESOLVED_APPLICANT_USER = "unresolved_applicant_user"
MEMBER_FETCH_TRANSIENT_ERROR = "member_fetch_transient_error"
INVALID_DECISION = "invalid_decision"


@dataclass(frozen=True)
class TransitionResult:
    ok: bool
    reason: str | None = None
    status: str | None = None
    previous_status: str | None = None
    application: Application | None = None
    role_result: RoleGrantResult | None = None
    warning_posted: bool = False
    side_effects: List[SideEffectResult] = field(default_factory=list)


@dataclass(frozen=True)
class VoteEvaluation:
    message_id: str
    evaluated: bool = False
    eligible_count: int = 0
    yes_count: int = 0
    no_count: int = 0
    threshold: int = 0
    decision: str | None = None
    ambiguous: bool = False
    error: str | None = None
    transition: TransitionResult | None = None


def format_decision_reason(
    source: str,
    actor_id: str | None,
    *,
    vote_context: VoteContext | None = None,
    reviewer_reason: str | None = None,
) -> str:
    if source == SOURCE_VOTE:
        if vote_context is not None:
            eligible = vote_context.eligible_count
            text = (
                f"Decision reached by vote. YES {vote_context.yes_count}/{eligible}, "
                f"NO {vote_context.no_count}/{eligible}, threshold {vote_context.threshold} "
                f"using {format_vote_rule(vote_context.rule)}."
            )
        else:
            text = "Decision reached by vote. YES ?/?, NO ?/?, threshold ? using configured vote rule."
    else:
        text = f"Forced by {mention_user(actor_id) or 'Unknown'} using slash command."
    if reviewer_reason:
        text = f"{text}\nReviewer reason: {reviewer_reason}"
    return text


class DecisionWorkflow:
    """Owns every status transition of an application.

    Each transition reloads the state under ``state_lock`` and re-checks the
    current status before acting, so repeated or overlapping invocations on
    the same application are harmless.
    """

    def __init__(
        self,
        store: StateStore,
        platform: ChatPlatform,
        registry: TrackRegistry,
        reviewers: ReviewerDirectory,
        *,
        state_lock: threading.RLock | None = None,
        bot_user_id: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._platform = platform
        self._registry = registry
        self._reviewers = reviewers
        self._lock = state_lock or threading.RLock()
        self._bot_user_id = bot_user_id
        self._clock = clock or (lambda: datetime.now(UTC))

    def _read(self) -> State:
        state = self._store.read()
        self._registry.set_custom_tracks(state.settings.custom_tracks)
        return state

    def _workspace_name(self) -> str:
        try:
            return self._platform.workspace_name()
        except Exception as exc:
            structlog.get_logger().warning("workspace_name_failed", error=error_text(exc))
            return "Unknown Workspace"

    def _step(self, name: str, application: Application, run: Callable[[], None]) -> SideEffectResult:
        """Run one post-commit side effect; failures are logged, never raised."""

        try:
            run()
        except Exception as exc:
            structlog.get_logger().bind(message_id=application.message_id).warning(
                f"{name}_failed", error=error_text(exc), kind=getattr(exc, "kind", None)
            )
            return SideEffectResult(status=FAILED_ERROR, message=f"{name}: {error_text(exc)}")
        return SideEffectResult(status=SENT, message=name)

    def _recolor(self, application: Application) -> None:
        self._platform.recolor_message(application.channel_id, application.message_id, status_color(application.status))

    def _post_notice(self, application: Application, text: str) -> None:
        self._platform.reply_to_message(application.channel_id, application.message_id, text, broadcast=True)

    def _archive(self, application: Application, reason: str) -> None:
        if application.thread_id:
            self._platform.archive_thread(application.channel_id, application.thread_id, reason)

    # ------------------------------------------------------------------ votes

    def evaluate_votes(self, message_id: str) -> VoteEvaluation:
        """Tally reactions on *message_id* and finalize when one side reaches the threshold."""

        log = structlog.get_logger().bind(message_id=message_id)
        state = self._read()
        application = state.applications.get(message_id)
        if application is None or application.status != STATUS_PENDING:
            return VoteEvaluation(message_id=message_id)

        voter_groups = state.settings.voter_roles.get(application.track_key, [])
        try:
            eligible = self._reviewers.eligible_reviewers(application.channel_id, voter_groups)
            if not eligible:
                return VoteEvaluation(message_id=message_id)
            accept_users = self._platform.fetch_reaction_users(application.channel_id, message_id, ACCEPT_EMOJI)
            deny_users = self._platform.fetch_reaction_users(application.channel_id, message_id, DENY_EMOJI)
        except Exception as exc:
            log.warning("vote_evaluation_failed", error=error_text(exc), kind=getattr(exc, "kind", None))
            return VoteEvaluation(message_id=message_id, error=error_text(exc))

        threshold = compute_vote_threshold(len(eligible), state.settings.vote_rule_for(application.track_key))
        snapshot = tally_votes(accept_users, deny_users, eligible)
        decision = decide(snapshot, threshold)
        ambiguous = (
            snapshot.yes_count >= threshold.threshold and snapshot.no_count >= threshold.threshold
        )
        evaluation = dict(
            message_id=message_id,
            evaluated=True,
            eligible_count=len(eligible),
            yes_count=snapshot.yes_count,
            no_count=snapshot.no_count,
            threshold=threshold.threshold,
            decision=decision,
            ambiguous=ambiguous,
        )
        if ambiguous:
            log.info("vote_decision_ambiguous", yes=snapshot.yes_count, no=snapshot.no_count, threshold=threshold.threshold)
            return VoteEvaluation(**evaluation)
        if decision is None:
            return VoteEvaluation(**evaluation)

        transition = self.finalize(
            message_id,
            decision,
            SOURCE_VOTE,
            self._bot_user_id,
            vote_context=VoteContext(
                eligible_count=len(eligible),
                yes_count=snapshot.yes_count,
                no_count=snapshot.no_count,
                threshold=threshold.threshold,
                rule=threshold.rule,
            ),
        )
        return VoteEvaluation(**evaluation, transition=transition)

    # --------------------------------------------------------------- finalize

    def finalize(
        self,
        message_id: str,
        decision: str,
        source: str,
        actor_id: str | None,
        *,
        reason: str | None = None,
        vote_context: VoteContext | None = None,
        allow_missing_member: bool = False,
    ) -> TransitionResult:
        """Move a pending application to accepted or denied."""

        if decision not in (STATUS_ACCEPTED, STATUS_DENIED):
            return TransitionResult(ok=False, reason=INVALID_DECISION)

        log = structlog.get_logger().bind(message_id=message_id, decision=decision, source=source)
        with self._lock:
            state = self._read()
            application = state.applications.get(message_id)
            if application is None:
                return TransitionResult(ok=False, reason=UNKNOWN_APPLICATION)
            if application.status != STATUS_PENDING:
                return TransitionResult(ok=False, reason=ALREADY_DECIDED, status=application.status, application=application)

            now = self._clock()
            application_id = application_display_id(self._registry, application)
            application.application_id = application_id
            track_label = self._registry.label(application.track_key)
            reviewer_reason = str(reason or "").strip() or None
            decision_text = format_decision_reason(
                source, actor_id, vote_context=vote_context, reviewer_reason=reviewer_reason
            )
            summary_lines = [decision_text]
            role_result: RoleGrantResult | None = None

            if decision == STATUS_ACCEPTED:
                role_result = grant_approved_roles(
                    self._platform,
                    application,
                    state.settings.approved_roles.get(application.track_key, []),
                    track_label=track_label,
                )
                if role_result.status == FAILED_MEMBER_FETCH_TRANSIENT:
                    notice = self._step(
                        "acceptance_blocked_notice",
                        application,
                        lambda: self._post_notice(application, build_acceptance_retry_notice(role_result.message)),
                    )
                    log.warning("acceptance_deferred", user_id=role_result.user_id)
                    return TransitionResult(
                        ok=False,
                        reason=MEMBER_FETCH_TRANSIENT_ERROR,
                        status=application.status,
                        application=application,
                        role_result=role_result,
                        warning_posted=notice.status == SENT,
                    )
                blocked = self._acceptance_block(application, role_result, allow_missing_member)
                if blocked is not None:
                    block_reason, result_reason = blocked
                    already_warned = self._already_warned(application.last_acceptance_block, role_result, block_reason)
                    application.last_acceptance_block = AcceptanceBlock(
                        status=role_result.status,
                        user_id=role_result.user_id,
                        reason=block_reason,
                        source=source,
                        actor_id=actor_id,
                        warned_at=now,
                    )
                    self._store.write(state)
                    if not already_warned:
                        self._step(
                            "acceptance_blocked_notice",
                            application,
                            lambda: self._post_notice(application, build_acceptance_blocked_notice(block_reason)),
                        )
                    log.info("acceptance_blocked", status=role_result.status, warned=not already_warned)
                    return TransitionResult(
                        ok=False,
                        reason=result_reason,
                        status=application.status,
                        application=application,
                        role_result=role_result,
                        warning_posted=not already_warned,
                    )

            application.status = decision
            application.decided_at = now
            application.decided_by = actor_id
            application.decision_source = source
            application.decision_reason = decision_text
            application.last_acceptance_block = None
            if vote_context is not None:
                application.vote_context = vote_context

            if decision == STATUS_ACCEPTED:
                application.approved_role_result = role_result
                summary_lines.append(role_result.message)
                replacements = build_template_replacements(
                    application,
                    track_label=track_label,
                    application_id=application_id,
                    server=self._workspace_name(),
                    reason=decision_text,
                    decided_at=now,
                )
                application.accept_announce_result = send_accept_announcement(
                    self._platform, state.settings, application, replacements
                )
                summary_lines.append(application.accept_announce_result.message)
            else:
                if not application.applicant_user_id:
                    application.applicant_user_id = resolve_applicant_user(
                        self._platform, applicant_raw_value(application)
                    ).user_id
                replacements = build_template_replacements(
                    application,
                    track_label=track_label,
                    application_id=application_id,
                    server=self._workspace_name(),
                    reason=reviewer_reason or decision_text,
                    decided_at=now,
                )
                application.deny_dm_result = send_deny_dm(self._platform, state.settings, application, replacements)
                summary_lines.append(application.deny_dm_result.message)

            application.admin_done = True
            self._store.write(state)
            log.info("application_finalized", application_id=application_id, actor_id=actor_id)

            effects = [
                self._step("message_recolor", application, lambda: self._recolor(application)),
                self._step(
                    "decision_notice",
                    application,
                    lambda: self._post_notice(application, build_decision_notice(decision, "\n".join(summary_lines))),
                ),
            ]
            if source == SOURCE_FORCE and application.thread_id:
                template, fallback = (
                    (state.settings.accept_announce_template, DEFAULT_ACCEPT_ANNOUNCE_TEMPLATE)
                    if decision == STATUS_ACCEPTED
                    else (state.settings.deny_dm_template, DEFAULT_DENY_DM_TEMPLATE)
                )
                forced = build_forced_decision_message(
                    decision, actor_id, application_id, render_template(template, fallback, replacements)
                )
                effects.append(
                    self._step(
                        "forced_decision_message",
                        application,
                        lambda: self._platform.reply_to_message(application.channel_id, application.thread_id, forced),
                    )
                )
            effects.append(self._post_history_log(state, application, track_label, application_id))
            effects.append(
                self._step(
                    "thread_archive",
                    application,
                    lambda: self._archive(application, f"Application {decision} - archiving discussion thread"),
                )
            )
            return TransitionResult(
                ok=True,
                status=application.status,
                previous_status=STATUS_PENDING,
                application=application,
                role_result=role_result,
                side_effects=effects,
            )

    @staticmethod
    def _acceptance_block(
        application: Application, role_result: RoleGrantResult, allow_missing_member: bool
    ) -> tuple[str, str] | None:
        if role_result.status == FAILED_USER_NOT_RESOLVED:
            reason = role_result.message.strip() or "Applicant user could not be resolved."
            return reason, UNRESOLVED_APPLICANT_USER
        if role_result.status == FAILED_MEMBER_NOT_FOUND and not allow_missing_member:
            reason = role_result.message.strip() or "Applicant is not in this workspace."
            return reason, MISSING_MEMBER_NOT_IN_GUILD
        return None

    @staticmethod
    def _already_warned(previous: AcceptanceBlock | None, role_result: RoleGrantResult, block_reason: str) -> bool:
        if previous is None or previous.status != role_result.status:
            return False
        if role_result.status == FAILED_USER_NOT_RESOLVED:
            return previous.reason == block_reason
        return (previous.user_id or "") == (role_result.user_id or "")

    def _post_history_log(
        self, state: State, application: Application, track_label: str, application_id: str
    ) -> SideEffectResult:
        channel_id = state.settings.log_channel_id
        if not channel_id:
            return SideEffectResult(status=SKIPPED_NO_CHANNEL, message="No log channel configured.")
        text = build_history_log(application, track_label=track_label, application_id=application_id)
        return self._step(
            "history_log",
            application,
            lambda: self._platform.send_message(channel_id, OutgoingMessage(text=text)),
        )

    # ----------------------------------------------------------------- reopen

    def reopen(self, message_id: str, actor_id: str, reason: str = "") -> TransitionResult:
        """Return a decided or closed application to pending.

        Granted groups and sent DMs are not reverted.
        """

        log = structlog.get_logger().bind(message_id=message_id)
        with self._lock:
            state = self._read()
            application = state.applications.get(message_id)
            if application is None:
                return TransitionResult(ok=False, reason=UNKNOWN_APPLICATION)
            if application.status == STATUS_PENDING:
                return TransitionResult(ok=False, reason=ALREADY_PENDING, status=STATUS_PENDING, application=application)

            previous_status = application.status
            application.last_decision = LastDecision(
                status=previous_status,
                decided_at=application.decided_at,
                decided_by=application.decided_by,
                decision_source=application.decision_source,
                decision_reason=application.decision_reason,
            )
            application.status = STATUS_PENDING
            application.decided_at = None
            application.decided_by = None
            application.decision_source = None
            application.decision_reason = None
            application.approved_role_result = None
            application.last_acceptance_block = None
            application.accept_announce_result = None
            application.deny_dm_result = None
            application.vote_context = None
            application.admin_done = False
            application.reopened_at = self._clock()
            application.reopened_by = actor_id
            application.reopen_reason = str(reason or "").strip() or None
            application.last_reminder_at = None
            application.reminder_count = 0
            self._store.write(state)
            log.info("application_reopened", previous_status=previous_status, actor_id=actor_id)

            effects = [
                self._step("message_recolor", application, lambda: self._recolor(application)),
                self._step(
                    "reopen_notice",
                    application,
                    lambda: self._post_notice(
                        application, build_reopen_notice(previous_status, actor_id, application.reopen_reason)
                    ),
                ),
            ]
            return TransitionResult(
                ok=True,
                status=STATUS_PENDING,
                previous_status=previous_status,
                application=application,
                side_effects=effects,
            )

    # ------------------------------------------------------------------ close

    def close(self, message_id: str, actor_id: str, reason: str = "") -> TransitionResult:
        log = structlog.get_logger().bind(message_id=message_id)
        with self._lock:
            state = self._read()
            application = state.applications.get(message_id)
            if application is None:
                return TransitionResult(ok=False, reason=UNKNOWN_APPLICATION)
            if application.status == STATUS_CLOSED:
                return TransitionResult(ok=False, reason=ALREADY_CLOSED, status=STATUS_CLOSED, application=application)

            previous_status = application.status
            application.status = STATUS_CLOSED
            application.closed_at = self._clock()
            application.closed_by = actor_id
            application.close_reason = str(reason or "").strip() or None
            application.admin_done = True
            self._store.write(state)
            log.info("application_closed", previous_status=previous_status, actor_id=actor_id)

            effects = [
                self._step("message_recolor", application, lambda: self._recolor(application)),
                self._step(
                    "close_notice",
                    application,
                    lambda: self._post_notice(application, build_close_notice(actor_id, application.close_reason)),
                ),
                self._step(
                    "thread_archive",
                    application,
                    lambda: self._archive(application, "Application closed - archiving discussion thread"),
                ),
            ]
            return TransitionResult(
                ok=True,
                status=STATUS_CLOSED,
                previous_status=previous_status,
                application=application,
                side_effects=effects,
            )
