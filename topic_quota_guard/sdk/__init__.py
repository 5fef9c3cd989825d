"""
SDK for Topic Quota Guard.

Provides a quota-gated assistant on top of the recorder.
"""

from .assistant import AssistantReply, QuotaGuardedAssistant

__all__ = ["AssistantReply", "QuotaGuardedAssistant"]
