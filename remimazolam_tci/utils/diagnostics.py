"""
Structured Diagnostics for PK/PD Calculations
==============================================

The engine reports fallbacks, clipped values and safety findings as
structured records sent to a sink. The engine never reads anything back
from the sink, and `None` is always accepted in place of a sink.

Usage:
------
    from remimazolam_tci.utils.diagnostics import RecordingSink, DiagnosticCategory

    sink = RecordingSink()
    session = TCISession(patient, sink=sink)
    session.ke0_result
    fallbacks = sink.filter(category=DiagnosticCategory.NUMERICAL, fallback_applied=True)
"""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .logger import get_logger


class DiagnosticSeverity(Enum):
    """How serious a diagnostic is."""
    CRITICAL = "CRITICAL"   # Calculation impossible
    HIGH = "HIGH"           # Calculation error, fallback required
    MEDIUM = "MEDIUM"       # Validation warning, may affect accuracy
    LOW = "LOW"             # Minor issue
    INFO = "INFO"           # Diagnostic information


class DiagnosticCategory(Enum):
    """Which part of the calculation a diagnostic concerns."""
    VALIDATION = "VALIDATION"
    NUMERICAL = "NUMERICAL"
    SAFETY = "SAFETY"
    PHARMACOKINETIC = "PHARMACOKINETIC"
    PROTOCOL = "PROTOCOL"


@dataclass(frozen=True)
class DiagnosticRecord:
    """
    A single structured diagnostic.

    Attributes:
        category: Calculation area (validation / numerical / safety / ...)
        message: Human-readable message
        context: Component name and relevant numeric values
        severity: Severity level
        source: Emitting component (e.g. 'Ke0Solver', 'AdamsIntegrator')
        resolved: True when the condition was handled inside the engine
        fallback_applied: True when a fallback strategy took over
        timestamp: Creation time
    """
    category: DiagnosticCategory
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    severity: DiagnosticSeverity = DiagnosticSeverity.INFO
    source: str = ""
    resolved: bool = False
    fallback_applied: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Return the record as a plain dictionary."""
        return {
            'timestamp': self.timestamp.isoformat(),
            'category': self.category.value,
            'severity': self.severity.value,
            'source': self.source,
            'message': self.message,
            'context': dict(self.context),
            'resolved': self.resolved,
            'fallback_applied': self.fallback_applied,
        }


class DiagnosticSink(ABC):
    """Destination for diagnostic records."""

    @abstractmethod
    def emit(self, record: DiagnosticRecord) -> None:
        """Accept a record. Return values are ignored by callers."""
        pass

    def report(
        self,
        category: DiagnosticCategory,
        message: str,
        source: str = "",
        severity: DiagnosticSeverity = DiagnosticSeverity.INFO,
        resolved: bool = False,
        fallback_applied: bool = False,
        **context: Any
    ) -> None:
        """Build a record from keyword arguments and emit it."""
        self.emit(DiagnosticRecord(
            category=category,
            message=message,
            context=context,
            severity=severity,
            source=source,
            resolved=resolved,
            fallback_applied=fallback_applied,
        ))


class NullSink(DiagnosticSink):
    """Sink that discards every record."""

    def emit(self, record: DiagnosticRecord) -> None:
        pass


class LoggingSink(DiagnosticSink):
    """
    Sink forwarding records to a standard logger.

    Severity maps onto log levels: CRITICAL→CRITICAL, HIGH→ERROR,
    MEDIUM→WARNING, LOW→INFO, INFO→DEBUG.
    """

    LEVELS = {
        DiagnosticSeverity.CRITICAL: logging.CRITICAL,
        DiagnosticSeverity.HIGH: logging.ERROR,
        DiagnosticSeverity.MEDIUM: logging.WARNING,
        DiagnosticSeverity.LOW: logging.INFO,
        DiagnosticSeverity.INFO: logging.DEBUG,
    }

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or get_logger(__name__)

    def emit(self, record: DiagnosticRecord) -> None:
        level = self.LEVELS[record.severity]
        flags = []
        if record.fallback_applied:
            flags.append("fallback")
        if record.resolved:
            flags.append("resolved")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        self.logger.log(
            level,
            "[%s] %s: %s%s %s",
            record.category.value,
            record.source or "engine",
            record.message,
            suffix,
            record.context,
        )


class RecordingSink(DiagnosticSink):
    """
    Sink keeping records in memory, for tests and operator review.

    Example:
        >>> sink = RecordingSink()
        >>> sink.report(DiagnosticCategory.SAFETY, "ke0 out of band", ke0=1.2)
        >>> len(sink)
        1
    """

    def __init__(self, max_records: int = 1000):
        self.max_records = max_records
        self.records: List[DiagnosticRecord] = []

    def emit(self, record: DiagnosticRecord) -> None:
        self.records.append(record)
        if len(self.records) > self.max_records:
            self.records.pop(0)

    def __len__(self) -> int:
        return len(self.records)

    def filter(
        self,
        category: Optional[DiagnosticCategory] = None,
        source: Optional[str] = None,
        severity: Optional[DiagnosticSeverity] = None,
        fallback_applied: Optional[bool] = None
    ) -> List[DiagnosticRecord]:
        """Return records matching every given criterion."""
        matches = []
        for record in self.records:
            if category is not None and record.category != category:
                continue
            if source is not None and record.source != source:
                continue
            if severity is not None and record.severity != severity:
                continue
            if fallback_applied is not None and record.fallback_applied != fallback_applied:
                continue
            matches.append(record)
        return matches

    def by_category(self) -> Dict[DiagnosticCategory, List[DiagnosticRecord]]:
        grouped: Dict[DiagnosticCategory, List[DiagnosticRecord]] = {}
        for record in self.records:
            grouped.setdefault(record.category, []).append(record)
        return grouped

    def summary(self) -> Dict[str, Any]:
        """Counts by severity, category and source."""
        return {
            'total': len(self.records),
            'by_severity': dict(Counter(r.severity.value for r in self.records)),
            'by_category': dict(Counter(r.category.value for r in self.records)),
            'by_source': dict(Counter(r.source for r in self.records)),
            'fallbacks': sum(1 for r in self.records if r.fallback_applied),
        }

    def clear(self) -> None:
        self.records.clear()


class CompositeSink(DiagnosticSink):
    """Sink fanning each record out to several sinks."""

    def __init__(self, *sinks: DiagnosticSink):
        self.sinks = [s for s in sinks if s is not None]

    def emit(self, record: DiagnosticRecord) -> None:
        for sink in self.sinks:
            sink.emit(record)


def ensure_sink(sink: Optional[DiagnosticSink]) -> DiagnosticSink:
    """Normalize an optional sink; `None` becomes a `NullSink`."""
    return sink if sink is not None else NullSink()
