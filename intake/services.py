"""Wiring of the intake components around one database session.

Every invocation (HTTP request, sweeper tick, CLI run) builds its own
:class:`Services` from a fresh session; nothing is shared between
invocations except the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from .config import IntakeSettings
from .conversations.repository import SqlConversationRepository
from .conversations.service import ConversationService
from .core.clock import Clock, system_clock
from .distribution.assignment import AssignmentGuard
from .distribution.matcher import DistributionMatcher
from .distribution.queue import WaitQueue
from .metrics.aggregator import MetricsAggregator
from .notifications import LoggingNotifier, Notifier, WebhookNotifier
from .operators.registry import OperatorRegistry
from .reconciliation.sla import SlaMonitor
from .reconciliation.sweeper import ReconciliationSweeper
from .triage.classifier import KeywordClassifier, LLMClassifier
from .triage.collaborators import (
    Classifier,
    CustomerLookup,
    IdentifierRequester,
    LoggingIdentifierRequester,
    NullCustomerLookup,
)
from .triage.pipeline import TriagePipeline
from .window.tracker import WindowTracker


@dataclass
class Collaborators:
    """External systems the core talks to."""

    classifier: Classifier = field(default_factory=KeywordClassifier)
    lookup: CustomerLookup = field(default_factory=NullCustomerLookup)
    requester: IdentifierRequester = field(default_factory=LoggingIdentifierRequester)
    notifier: Notifier = field(default_factory=LoggingNotifier)

    @classmethod
    def from_settings(cls, settings: IntakeSettings) -> "Collaborators":
        """Pick the LLM classifier and webhook notifier when configured.

        The LLM classifier needs ``classifier_api_key``; ``classifier_url``
        alone only changes the endpoint it talks to.
        """

        classifier: Classifier = (
            LLMClassifier(settings) if settings.classifier_api_key else KeywordClassifier()
        )
        notifier: Notifier = (
            WebhookNotifier(settings.notify_webhook_url)
            if settings.notify_webhook_url
            else LoggingNotifier()
        )
        return cls(classifier=classifier, notifier=notifier)


@dataclass
class Services:
    session: Session
    settings: IntakeSettings
    registry: OperatorRegistry
    window: WindowTracker
    queue: WaitQueue
    guard: AssignmentGuard
    matcher: DistributionMatcher
    pipeline: TriagePipeline
    conversations: ConversationService
    metrics: MetricsAggregator
    sla: SlaMonitor
    sweeper: ReconciliationSweeper


def build_services(
    session: Session,
    settings: IntakeSettings,
    collaborators: Collaborators | None = None,
    *,
    clock: Clock = system_clock,
) -> Services:
    collaborators = collaborators or Collaborators()
    registry = OperatorRegistry(session, settings, clock=clock)
    window = WindowTracker(session, settings, clock=clock)
    queue = WaitQueue(session, settings, clock=clock)
    guard = AssignmentGuard(session, clock=clock)
    matcher = DistributionMatcher(
        session,
        settings,
        registry,
        queue,
        guard,
        notifier=collaborators.notifier,
        clock=clock,
    )
    # An operator coming online or freeing a slot drains the waiting queue.
    registry.add_availability_listener(lambda _operator_id: matcher.drain())
    pipeline = TriagePipeline(
        session,
        settings,
        registry,
        matcher,
        collaborators.classifier,
        lookup=collaborators.lookup,
        requester=collaborators.requester,
        clock=clock,
    )
    conversations = ConversationService(
        session,
        SqlConversationRepository(session, clock=clock),
        window,
        pipeline,
        matcher,
        clock=clock,
    )
    sla = SlaMonitor(session, settings, notifier=collaborators.notifier, clock=clock)
    return Services(
        session=session,
        settings=settings,
        registry=registry,
        window=window,
        queue=queue,
        guard=guard,
        matcher=matcher,
        pipeline=pipeline,
        conversations=conversations,
        metrics=MetricsAggregator(session, settings, clock=clock),
        sla=sla,
        sweeper=ReconciliationSweeper(
            session, settings, matcher, pipeline, sla=sla, clock=clock
        ),
    )


__all__ = ["Collaborators", "Services", "build_services"]
