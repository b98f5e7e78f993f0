"""Wiring of the scheduling components from settings.

Routes, jobs and the worker CLI all get their collaborators from
``get_services()``; tests build their own with fakes via ``build_services``.
"""

from dataclasses import dataclass, field
from functools import lru_cache

from sqlalchemy.engine import Engine

from parley.core.config import Settings, settings
from parley.core.rules import LinkPolicy, SlaPolicy, load_link_policy, load_sla_policy
from parley.integrations.completion_client import CompletionClient, OpenAICompletionClient
from parley.integrations.provider import EmailCalendarProvider, GoogleWorkspaceProvider
from parley.scheduler.confidence_linker import CandidateSource, ConfidenceLinker
from parley.scheduler.draft_manager import DraftManager
from parley.scheduler.requests import RequestService
from parley.scheduler.response_processor import ResponseProcessor
from parley.scheduler.sla_monitor import SlaMonitor


@dataclass
class SchedulerServices:
    config: Settings
    engine: Engine
    sla_policy: SlaPolicy
    link_policy: LinkPolicy
    provider: EmailCalendarProvider
    completion: CompletionClient
    drafts: DraftManager
    sla_monitor: SlaMonitor
    linker: ConfidenceLinker
    requests: RequestService
    processor: ResponseProcessor
    # Job instances, one per job id, so the is_running guard spans overlapping triggers
    jobs: dict = field(default_factory=dict)


def build_services(
    config: Settings = settings,
    *,
    engine: Engine | None = None,
    provider: EmailCalendarProvider | None = None,
    completion: CompletionClient | None = None,
    candidate_source: CandidateSource | None = None,
) -> SchedulerServices:
    if engine is None:
        from parley.core.db import engine
    sla_policy = load_sla_policy(config)
    link_policy = load_link_policy(config)
    provider = provider or GoogleWorkspaceProvider(config.GOOGLE_ACCESS_TOKEN, config.GOOGLE_CALENDAR_ID)
    completion = completion or OpenAICompletionClient(
        model=config.OPENAI_MODEL, api_key=config.OPENAI_API_KEY, timeout=config.COMPLETION_TIMEOUT_SECONDS
    )

    drafts = DraftManager(
        engine,
        provider,
        sla_policy,
        expiry_hours=config.DRAFT_EXPIRY_HOURS,
        max_retries=config.DRAFT_MAX_RETRIES,
    )
    sla_monitor = SlaMonitor(drafts, sla_policy, business_hours_start=config.BUSINESS_HOURS_START)
    linker = ConfidenceLinker(link_policy, candidate_source)
    requests = RequestService(
        provider,
        drafts,
        sla_policy,
        slot_count=config.PROPOSAL_SLOT_COUNT,
        window_days=config.PROPOSAL_WINDOW_DAYS,
        business_hours_start=config.BUSINESS_HOURS_START,
        business_hours_end=config.BUSINESS_HOURS_END,
    )
    processor = ResponseProcessor(
        engine,
        completion,
        provider,
        drafts,
        sla_monitor,
        linker,
        business_hours_start=config.BUSINESS_HOURS_START,
        business_hours_end=config.BUSINESS_HOURS_END,
    )
    return SchedulerServices(
        config=config,
        engine=engine,
        sla_policy=sla_policy,
        link_policy=link_policy,
        provider=provider,
        completion=completion,
        drafts=drafts,
        sla_monitor=sla_monitor,
        linker=linker,
        requests=requests,
        processor=processor,
    )


@lru_cache
def get_services() -> SchedulerServices:
    """FastAPI dependency / process-wide singleton."""
    return build_services()
