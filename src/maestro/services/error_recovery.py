"""Error classification and recovery policy for turn and enrichment failures."""

import logging
import re
from enum import Enum
from typing import Optional

from .json_utils import ParseFailure
from .llm_client import ApiFailure, UploadFailure
from .media import MediaCaptureFailure, MediaProcessingError
from .storage import StorageError

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """Types of errors that can occur while processing a turn."""
    API_FAILURE = "api_failure"
    UPLOAD_FAILURE = "upload_failure"
    PARSE_FAILURE = "parse_failure"
    MEDIA_CAPTURE_FAILURE = "media_capture_failure"
    STORAGE_ERROR = "storage_error"
    UNKNOWN_ERROR = "unknown_error"


class RecoveryStrategy(Enum):
    """Recovery strategies for different error types."""
    ABORT_TURN = "abort_turn"
    PROCEED_WITHOUT_MEDIA = "proceed_without_media"
    CLEAR_ENRICHMENT = "clear_enrichment"


class ErrorRecovery:
    """Service for classifying errors and determining recovery strategies."""

    # Fallback classification for foreign exceptions, by message
    ERROR_PATTERNS = {
        ErrorType.UPLOAD_FAILURE: [
            r"upload.*fail",
            r"file.*not.*active",
        ],
        ErrorType.PARSE_FAILURE: [
            r"invalid.*json",
            r"no.*json",
            r"schema.*validation",
        ],
        ErrorType.MEDIA_CAPTURE_FAILURE: [
            r"camera",
            r"capture.*(fail|timeout)",
            r"permission.*denied.*(camera|microphone)",
        ],
        ErrorType.STORAGE_ERROR: [
            r"storage.*error",
            r"failed.*to.*write",
        ],
        ErrorType.API_FAILURE: [
            r"api.*error",
            r"rate.*limit",
            r"connection.*error",
            r"timed.*out",
        ],
    }

    RECOVERY_STRATEGIES = {
        ErrorType.API_FAILURE: RecoveryStrategy.ABORT_TURN,
        ErrorType.UPLOAD_FAILURE: RecoveryStrategy.PROCEED_WITHOUT_MEDIA,
        ErrorType.PARSE_FAILURE: RecoveryStrategy.CLEAR_ENRICHMENT,
        ErrorType.MEDIA_CAPTURE_FAILURE: RecoveryStrategy.PROCEED_WITHOUT_MEDIA,
        ErrorType.STORAGE_ERROR: RecoveryStrategy.ABORT_TURN,
        ErrorType.UNKNOWN_ERROR: RecoveryStrategy.ABORT_TURN,
    }

    USER_MESSAGES = {
        ErrorType.API_FAILURE: "The tutor service is unavailable right now. Please try again.",
        ErrorType.UPLOAD_FAILURE: "The attachment could not be uploaded.",
        ErrorType.PARSE_FAILURE: "",  # Silent: enrichment output is simply cleared
        ErrorType.MEDIA_CAPTURE_FAILURE: "",  # Silent: turn continues without media
        ErrorType.STORAGE_ERROR: "The conversation could not be saved.",
        ErrorType.UNKNOWN_ERROR: "Something went wrong. Please try again.",
    }

    # Friendly text for well-known provider error codes
    CODE_MESSAGES = {
        "MISSING_API_KEY": "No API key is configured for the tutor service.",
        "UNAUTHENTICATED": "The API key was rejected.",
        "PERMISSION_DENIED": "The API key is not allowed to use this model.",
        "RESOURCE_EXHAUSTED": "Rate limit reached. Please wait a moment and try again.",
        "INVALID_ARGUMENT": "The request was rejected as invalid.",
        "DEADLINE_EXCEEDED": "The tutor took too long to answer.",
        "TIMEOUT": "The tutor took too long to answer.",
        "NETWORK_ERROR": "Network error while contacting the tutor service.",
    }

    @classmethod
    def classify_error(cls, exception: Exception) -> ErrorType:
        """
        Classify an exception into an ErrorType.

        Args:
            exception: The exception to classify

        Returns:
            ErrorType enum value
        """
        if isinstance(exception, ApiFailure):
            return ErrorType.API_FAILURE
        if isinstance(exception, (UploadFailure, MediaProcessingError)):
            return ErrorType.UPLOAD_FAILURE
        if isinstance(exception, ParseFailure):
            return ErrorType.PARSE_FAILURE
        if isinstance(exception, MediaCaptureFailure):
            return ErrorType.MEDIA_CAPTURE_FAILURE
        if isinstance(exception, StorageError):
            return ErrorType.STORAGE_ERROR

        error_message = str(exception).lower()
        for error_type, patterns in cls.ERROR_PATTERNS.items():
            for pattern in patterns:
                if re.search(pattern, error_message, re.IGNORECASE):
                    logger.info(f"Classified error as {error_type.value}: {error_message[:100]}")
                    return error_type

        logger.warning(f"Could not classify error: {error_message[:100]}")
        return ErrorType.UNKNOWN_ERROR

    @classmethod
    def get_recovery_strategy(cls, error_type: ErrorType) -> RecoveryStrategy:
        return cls.RECOVERY_STRATEGIES.get(error_type, RecoveryStrategy.ABORT_TURN)

    @classmethod
    def should_notify_user(cls, error_type: ErrorType) -> bool:
        """Only errors that end a turn produce a visible message."""
        return cls.get_recovery_strategy(error_type) == RecoveryStrategy.ABORT_TURN

    @classmethod
    def describe_api_failure(cls, failure: ApiFailure) -> str:
        """
        User-readable text for an API failure.

        Preference order: known code text, raw code, HTTP status, message.
        """
        if failure.code and failure.code in cls.CODE_MESSAGES:
            return cls.CODE_MESSAGES[failure.code]
        if failure.code:
            return f"{failure.code}: {failure.message}" if failure.message else failure.code
        if failure.status:
            return f"HTTP {failure.status}"
        return failure.message or cls.USER_MESSAGES[ErrorType.API_FAILURE]

    @classmethod
    def get_user_message(cls, exception: Exception) -> str:
        """
        Get user-friendly message for an exception.

        Args:
            exception: The exception that ended the turn

        Returns:
            User-friendly error message
        """
        if isinstance(exception, ApiFailure):
            return cls.describe_api_failure(exception)
        error_type = cls.classify_error(exception)
        return cls.USER_MESSAGES.get(error_type) or str(exception) or cls.USER_MESSAGES[ErrorType.UNKNOWN_ERROR]


class ErrorRecoveryContext:
    """Context for error recovery operations."""

    def __init__(self, pair_id: str, message_id: Optional[str], error: Exception):
        """
        Initialize error recovery context.

        Args:
            pair_id: Conversation pair identifier
            message_id: Placeholder message affected, if any
            error: The exception that occurred
        """
        self.pair_id = pair_id
        self.message_id = message_id
        self.error = error
        self.error_type = ErrorRecovery.classify_error(error)
        self.recovery_strategy = ErrorRecovery.get_recovery_strategy(self.error_type)
        self.user_message_text = ErrorRecovery.get_user_message(error)

        logger.warning(
            f"Error recovery triggered for pair {pair_id}, message {message_id}:\n"
            f"  Error type: {self.error_type.value}\n"
            f"  Recovery strategy: {self.recovery_strategy.value}\n"
            f"  Original error: {str(error)[:200]}"
        )

    def should_notify_user(self) -> bool:
        return ErrorRecovery.should_notify_user(self.error_type)
