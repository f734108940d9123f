"""Typed knowledge base payload models."""

from knowledge.types.events import (
    ClinicalEvent,
    DictationEvent,
    LabPanelEvent,
    LabResult,
    MedicationChangeEvent,
    NoteEvent,
    VitalsEvent,
    VitalsReading,
    parse_event,
)
from knowledge.types.narrative import AIMemory, ClinicalNarrative, InteractionLogEntry
from knowledge.types.problem import (
    HISTORICAL,
    TIME_PERIODS,
    MedicationChange,
    PeriodBucket,
    PeriodMedications,
    PeriodStatus,
    Problem,
    ProblemTimeline,
    TimelineLab,
    TimelineNote,
    TimelineVitals,
    TimePeriod,
)
from knowledge.types.session import (
    ActiveClinicalState,
    ActiveCondition,
    AIObservation,
    BackgroundFact,
    ConflictItem,
    ConflictRecord,
    ConversationMessage,
    DictationEntry,
    PendingDecision,
    SafetyFlag,
    SessionContext,
)
from knowledge.types.trend import TrendEntry, TrendSeries
from knowledge.types.writeback import (
    ActiveConditionUpdate,
    AIStateSync,
    DetectedConflict,
    MemoryClassification,
    MemoryUpdate,
    NarrativeUpdate,
    ProblemInsightUpdate,
    SyncedDictation,
    SyncedFlag,
)

__all__ = [
    "AIMemory",
    "AIObservation",
    "AIStateSync",
    "ActiveClinicalState",
    "ActiveCondition",
    "ActiveConditionUpdate",
    "BackgroundFact",
    "ClinicalEvent",
    "ClinicalNarrative",
    "ConflictItem",
    "ConflictRecord",
    "ConversationMessage",
    "DetectedConflict",
    "DictationEntry",
    "DictationEvent",
    "HISTORICAL",
    "InteractionLogEntry",
    "LabPanelEvent",
    "LabResult",
    "MedicationChange",
    "MedicationChangeEvent",
    "MemoryClassification",
    "MemoryUpdate",
    "NarrativeUpdate",
    "NoteEvent",
    "PendingDecision",
    "PeriodBucket",
    "PeriodMedications",
    "PeriodStatus",
    "Problem",
    "ProblemInsightUpdate",
    "ProblemTimeline",
    "SafetyFlag",
    "SessionContext",
    "SyncedDictation",
    "SyncedFlag",
    "TIME_PERIODS",
    "TimePeriod",
    "TimelineLab",
    "TimelineNote",
    "TimelineVitals",
    "TrendEntry",
    "TrendSeries",
    "VitalsEvent",
    "VitalsReading",
    "parse_event",
]
