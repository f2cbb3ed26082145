"""
Story generation error taxonomy

Every error that can leave the generation pipeline carries a reason code
and an HTTP status so the API layer can report it without guessing.
"""
from typing import Any, Dict, Optional


class StoryGenerationError(Exception):
    """Base class for labelled generation failures"""
    reason: str = "generation_failed"
    status_code: int = 500

    def __init__(self, message: str, reason: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "reason": self.reason, **self.details}


class QuotaExceeded(StoryGenerationError):
    """No generations left in the current period"""
    reason = "quota_exceeded"
    status_code = 403

    def __init__(self, message: str, used: int, limit: Optional[int]):
        super().__init__(message, used=used, limit=limit)
        self.used = used
        self.limit = limit


class AccountNotFound(StoryGenerationError):
    reason = "account_not_found"
    status_code = 404


class NarrativeGenerationFailed(StoryGenerationError):
    """Story text could not be produced"""
    reason = "narrative_failed"
    status_code = 502


class ProviderTimeout(StoryGenerationError):
    """Assistant run did not finish within the polling ceiling"""
    reason = "provider_timeout"
    status_code = 504


class AssistantRunFailed(StoryGenerationError):
    """The provider reported a terminal non-completed run status"""
    reason = "assistant_run_failed"
    status_code = 502


class ConversationStateInvalid(StoryGenerationError):
    reason = "conversation_state_invalid"
    status_code = 500


class IllustrationFailed(StoryGenerationError):
    """No illustration could be produced at all"""
    reason = "illustration_failed"
    status_code = 502
