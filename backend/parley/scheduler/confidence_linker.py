"""Confidence-scored linking of a request to a CRM company, contact and deal.

Signals are additive and individually capped:

    participant match   0-40  (one active deal 40, several 20)
    thread continuity   0-30  (conversation already linked to a deal)
    domain -> company   0-15  (one company 15, several 7)
    recent activity     0-10  (linear decay over the recency window)
    subject similarity  0-5   (token overlap with the deal title)

At or above ``auto_threshold`` the link is applied with an undo record; at or
above ``suggest_threshold`` a link-suggestion work item is opened; below
that nothing is linked.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from sqlmodel import Session, select

from parley.core.errors import InvalidRequestError
from parley.core.rules import LinkPolicy
from parley.models.enums import ActionType, Actor, Urgency, WorkItemStatus, WorkItemType
from parley.models.scheduling import SchedulingAction, SchedulingRequest
from parley.models.types import utcnow
from parley.models.work_items import HumanWorkItem
from parley.scheduler.state_machine import apply_updates, record_action

logger = logging.getLogger(__name__)

PARTICIPANT_WEIGHT = 40
THREAD_WEIGHT = 30
DOMAIN_WEIGHT = 15
RECENCY_WEIGHT = 10
SUBJECT_WEIGHT = 5

LINK_FIELDS = ("company_id", "contact_id", "deal_id", "deal_stage", "contact_persona",
               "link_confidence", "link_method", "link_reasoning")

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset({"re", "fw", "fwd", "the", "a", "an", "and", "or", "for", "with", "to", "of", "on", "meeting", "call"})


@dataclass(frozen=True)
class DealCandidate:
    deal_id: str
    company_id: str | None = None
    contact_id: str | None = None
    stage: str | None = None
    title: str | None = None
    persona: str | None = None
    last_activity_at: datetime | None = None


@dataclass
class LinkCandidates:
    participant_deals: list[DealCandidate] = field(default_factory=list)
    thread_deal: DealCandidate | None = None
    domain_company_ids: list[str] = field(default_factory=list)
    last_activity_at: datetime | None = None


class CandidateSource(Protocol):
    def candidates_for(self, sender_email: str, thread_id: str | None) -> LinkCandidates: ...


class EmptyCandidateSource:
    """Used when no CRM is connected: every score is zero, nothing links."""

    def candidates_for(self, sender_email: str, thread_id: str | None) -> LinkCandidates:
        return LinkCandidates()


class LinkDecision(str, Enum):
    AUTO = "auto"
    SUGGEST = "suggest"
    NONE = "none"


@dataclass
class LinkScore:
    total: int
    signals: dict[str, float]
    deal: DealCandidate | None
    reasoning: str


@dataclass
class LinkOutcome:
    decision: LinkDecision
    score: LinkScore
    work_item_id: uuid.UUID | None = None


def _tokens(text: str | None) -> set[str]:
    return {t for t in _TOKEN_RE.findall((text or "").lower()) if t not in _STOPWORDS}


def subject_similarity(subject: str | None, title: str | None) -> float:
    """Jaccard overlap of meaningful tokens, 0.0-1.0."""
    a, b = _tokens(subject), _tokens(title)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def _chosen_deal(candidates: LinkCandidates) -> DealCandidate | None:
    if candidates.thread_deal is not None:
        return candidates.thread_deal
    deals = candidates.participant_deals
    if not deals:
        return None
    epoch = datetime.min.replace(tzinfo=utcnow().tzinfo)
    return max(deals, key=lambda d: d.last_activity_at or epoch)


def score_link(candidates: LinkCandidates, subject: str | None, policy: LinkPolicy, now: datetime) -> LinkScore:
    signals: dict[str, float] = {}
    reasons: list[str] = []

    deal_count = len(candidates.participant_deals)
    if deal_count == 1:
        signals["participant"] = PARTICIPANT_WEIGHT
        reasons.append("sender is on exactly one active deal")
    elif deal_count > 1:
        signals["participant"] = PARTICIPANT_WEIGHT / 2
        reasons.append(f"sender is on {deal_count} active deals")

    if candidates.thread_deal is not None:
        signals["thread"] = THREAD_WEIGHT
        reasons.append("conversation already linked to a deal")

    company_count = len(set(candidates.domain_company_ids))
    if company_count == 1:
        signals["domain"] = DOMAIN_WEIGHT
        reasons.append("email domain matches one company")
    elif company_count > 1:
        signals["domain"] = DOMAIN_WEIGHT // 2
        reasons.append(f"email domain matches {company_count} companies")

    if candidates.last_activity_at is not None:
        window = timedelta(days=policy.recency_window_days)
        age = now - candidates.last_activity_at
        if timedelta(0) <= age < window:
            signals["recency"] = round(RECENCY_WEIGHT * (1 - age / window), 2)
            reasons.append(f"activity with this contact {age.days}d ago")

    deal = _chosen_deal(candidates)
    if deal is not None:
        similarity = subject_similarity(subject, deal.title)
        if similarity > 0:
            signals["subject"] = round(SUBJECT_WEIGHT * similarity, 2)
            reasons.append(f"subject overlaps deal title ({similarity:.0%})")

    total = int(min(100, round(sum(signals.values()))))
    return LinkScore(total=total, signals=signals, deal=deal, reasoning="; ".join(reasons) or "no matching signals")


class ConfidenceLinker:
    def __init__(self, policy: LinkPolicy, source: CandidateSource | None = None):
        self.policy = policy
        self.source = source or EmptyCandidateSource()

    def decide(self, score: LinkScore) -> LinkDecision:
        if score.deal is None:
            return LinkDecision.NONE
        if score.total >= self.policy.auto_threshold:
            return LinkDecision.AUTO
        if score.total >= self.policy.suggest_threshold:
            return LinkDecision.SUGGEST
        return LinkDecision.NONE

    def should_link(self, session: Session, request: SchedulingRequest) -> bool:
        """Skip requests already linked, undone by a human, or with a suggestion already raised."""
        if request.deal_id is not None:
            return False
        undone = session.exec(
            select(SchedulingAction.id).where(
                SchedulingAction.request_id == request.id,
                SchedulingAction.action_type == ActionType.LINK_UNDONE.value,
            )
        ).first()
        if undone is not None:
            return False
        suggested = session.exec(
            select(HumanWorkItem.id).where(
                HumanWorkItem.request_id == request.id,
                HumanWorkItem.item_type == WorkItemType.LINK_SUGGESTION.value,
            )
        ).first()
        return suggested is None

    def link_request(
        self,
        session: Session,
        request: SchedulingRequest,
        *,
        sender_email: str,
        subject: str | None,
        thread_id: str | None = None,
        now: datetime | None = None,
    ) -> LinkOutcome:
        """Score and apply (or suggest) a link. The caller commits."""
        now = now or utcnow()
        candidates = self.source.candidates_for(sender_email.lower(), thread_id)
        score = score_link(candidates, subject, self.policy, now)
        decision = self.decide(score)
        logger.info(
            "Entity link scored",
            extra={"request_id": str(request.id), "score": score.total, "decision": decision.value},
        )

        if decision is LinkDecision.AUTO:
            self._apply(session, request, score.deal, score.total, "auto", score.reasoning, now)
            record_action(
                session,
                request,
                ActionType.ENTITY_LINKED,
                reasoning=f"auto-linked at {score.total}/100: {score.reasoning}",
                details={"deal_id": score.deal.deal_id, "signals": score.signals, "undo_available": True},
            )
            return LinkOutcome(decision, score)

        if decision is LinkDecision.SUGGEST:
            item = HumanWorkItem(
                request_id=request.id,
                user_id=request.user_id,
                item_type=WorkItemType.LINK_SUGGESTION.value,
                priority=Urgency.LOW.value,
                title=f"Confirm deal link for {request.title}",
                description=score.reasoning,
                reason_code="link_suggestion",
                suggested_action="Accept to link this request to the suggested deal.",
                context={
                    "deal_id": score.deal.deal_id,
                    "company_id": score.deal.company_id,
                    "contact_id": score.deal.contact_id,
                    "deal_stage": score.deal.stage,
                    "contact_persona": score.deal.persona,
                    "score": score.total,
                    "signals": score.signals,
                },
            )
            session.add(item)
            session.flush()
            record_action(
                session,
                request,
                ActionType.LINK_SUGGESTED,
                reasoning=f"suggested link at {score.total}/100: {score.reasoning}",
                details={"deal_id": score.deal.deal_id, "work_item_id": str(item.id)},
            )
            return LinkOutcome(decision, score, work_item_id=item.id)

        return LinkOutcome(decision, score)

    def _apply(
        self,
        session: Session,
        request: SchedulingRequest,
        deal: DealCandidate,
        confidence: int,
        method: str,
        reasoning: str,
        now: datetime,
    ) -> None:
        previous = {name: getattr(request, name) for name in LINK_FIELDS}
        apply_updates(
            session,
            request,
            {
                "company_id": deal.company_id,
                "contact_id": deal.contact_id,
                "deal_id": deal.deal_id,
                "deal_stage": deal.stage,
                "contact_persona": deal.persona or request.contact_persona,
                "link_confidence": confidence,
                "link_method": method,
                "link_reasoning": reasoning,
                "previous_link": previous,
            },
            now=now,
        )

    def accept_suggestion(
        self, session: Session, item: HumanWorkItem, *, accepted_by: str, now: datetime | None = None
    ) -> None:
        """Apply the deal from an open link-suggestion work item."""
        now = now or utcnow()
        if item.item_type != WorkItemType.LINK_SUGGESTION.value or item.request_id is None:
            raise InvalidRequestError(f"Work item {item.id} is not a link suggestion")
        if item.status != WorkItemStatus.OPEN.value:
            raise InvalidRequestError(f"Work item {item.id} is already {item.status}")

        context: dict[str, Any] = item.context or {}
        request = session.get(SchedulingRequest, item.request_id)
        deal = DealCandidate(
            deal_id=context["deal_id"],
            company_id=context.get("company_id"),
            contact_id=context.get("contact_id"),
            stage=context.get("deal_stage"),
            persona=context.get("contact_persona"),
        )
        self._apply(session, request, deal, int(context.get("score", 0)), "manual", f"accepted by {accepted_by}", now)
        record_action(
            session,
            request,
            ActionType.ENTITY_LINKED,
            actor=Actor.HUMAN,
            reasoning=f"suggested link accepted by {accepted_by}",
            details={"deal_id": deal.deal_id, "work_item_id": str(item.id)},
        )

    def undo_link(
        self, session: Session, request: SchedulingRequest, *, actor: Actor = Actor.HUMAN, now: datetime | None = None
    ) -> None:
        if request.previous_link is None:
            raise InvalidRequestError(f"Request {request.id} has no link to undo")
        removed = request.deal_id
        restored = {name: request.previous_link.get(name) for name in LINK_FIELDS}
        apply_updates(session, request, {**restored, "previous_link": None}, now=now or utcnow())
        record_action(
            session,
            request,
            ActionType.LINK_UNDONE,
            actor=actor,
            reasoning="automatic link undone",
            details={"removed_deal_id": removed, "restored_deal_id": restored.get("deal_id")},
        )
        logger.info("Entity link undone", extra={"request_id": str(request.id)})
