"""Advisory signal ingestion and AI analysis."""

from .analyzer import AnalysisResult, SignalAnalyzer
from .signal_service import SIGNAL_TTL, SignalService, new_signal_from_payload

__all__ = ['AnalysisResult', 'SIGNAL_TTL', 'SignalAnalyzer', 'SignalService', 'new_signal_from_payload']
