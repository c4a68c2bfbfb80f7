"""Triage Pipeline: wallet, customer link, identifier, classification, rules."""

from .classifier import KeywordClassifier, LLMClassifier
from .collaborators import (
    Classification,
    ClassificationContext,
    Classifier,
    CustomerLookup,
    CustomerMatch,
    IdentifierRequester,
    LoggingIdentifierRequester,
    NullCustomerLookup,
    bounded_call,
)
from .identifiers import find_cnpj, format_cnpj, is_valid_cnpj, scan_messages
from .pipeline import FAILED_TRIAGE_REASON, TriageOutcome, TriagePipeline
from .rules import RuleContext, RuleEngine, fold, schedule_matches
from .states import ALLOWED_TRANSITIONS, can_transition, is_intermediate, transition

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Classification",
    "ClassificationContext",
    "Classifier",
    "CustomerLookup",
    "CustomerMatch",
    "FAILED_TRIAGE_REASON",
    "IdentifierRequester",
    "KeywordClassifier",
    "LLMClassifier",
    "LoggingIdentifierRequester",
    "NullCustomerLookup",
    "RuleContext",
    "RuleEngine",
    "TriageOutcome",
    "TriagePipeline",
    "bounded_call",
    "can_transition",
    "find_cnpj",
    "fold",
    "format_cnpj",
    "is_intermediate",
    "is_valid_cnpj",
    "scan_messages",
    "schedule_matches",
    "transition",
]
