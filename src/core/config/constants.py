"""
System Constants and Enumerations

This module defines system-wide constants and enumerations used across
the streaming chat proxy.

Architectural Decision: Centralized constants for maintainability
- Single source of truth for magic numbers
- Type-safe enums for state management
- Easy to update and track changes

Author: System Architect
Date: 2025-12-05
"""

from enum import Enum

# ============================================================================
# Stage Identifiers (for execution tracking and logging)
# ============================================================================


class Stage(str, Enum):
    """
    Request processing stages for execution tracking.

    Format: {SEQUENCE}_{DESCRIPTIVE_NAME}
    - SEQUENCE: Numeric order (1.0, 2.0, ...) or alphabetic prefix (A, CB, R)
    - DESCRIPTIVE_NAME: Clear, uppercase description with underscores

    Each stage represents a major phase of one chat request, in the order the
    orchestrator drives them.
    """

    # Main Request Lifecycle
    ADMISSION = "1.0_ADMISSION"
    CONVERSATION_RESOLVE = "2.0_CONVERSATION_RESOLVE"
    UPSTREAM_OPEN = "3.0_UPSTREAM_OPEN"
    STREAM_RELAY = "4.0_STREAM_RELAY"
    FOLLOW_UP = "5.0_FOLLOW_UP"
    TERMINAL = "6.0_TERMINAL"

    # Cross-Cutting Concerns (Alphabetic Prefixes)
    CIRCUIT_BREAKER = "CB_CIRCUIT_BREAKER"
    RETRY = "R_RETRY_LOGIC"
    QUEUE = "A_ADMISSION_QUEUE"
    METRICS = "M_METRICS_COLLECTION"
    LOGGING = "L_LOGGING_OPERATIONS"


# ============================================================================
# Circuit Breaker States
# ============================================================================


class CircuitState(str, Enum):
    """
    Circuit breaker states.

    CLOSED: Normal operation, requests allowed
    OPEN: Failing fast, requests blocked
    HALF_OPEN: Testing recovery, calls allowed until N successes or one failure
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# ============================================================================
# Request Priority
# ============================================================================


class RequestPriority(str, Enum):
    """
    Admission priority.

    HIGH: queued ahead of every waiting NORMAL request
    NORMAL: queued at the tail (default)
    """

    HIGH = "high"
    NORMAL = "normal"


# ============================================================================
# Upstream Operation Classes (one circuit breaker each)
# ============================================================================

OPERATION_CREATE_CONVERSATION = "create_conversation"
OPERATION_LIST_CONVERSATIONS = "list_conversations"
OPERATION_CHAT_STREAM = "chat_stream"

# ============================================================================
# Admission Error Codes
# ============================================================================

ADMISSION_QUEUE_FULL = "QUEUE_FULL"
ADMISSION_QUEUE_TIMEOUT = "QUEUE_TIMEOUT"
ADMISSION_QUEUE_CLEARED = "QUEUE_CLEARED"

# Queue utilisation at which admission reports itself degraded
ADMISSION_DEGRADED_QUEUE_RATIO = 0.8
# Rejection rate at which admission reports itself degraded
ADMISSION_DEGRADED_REJECTION_RATIO = 0.1

# Retry-After advertised on capacity rejections (seconds)
ADMISSION_RETRY_AFTER = 60

# ============================================================================
# HTTP Headers
# ============================================================================

HEADER_THREAD_ID = "X-Thread-ID"
HEADER_USER_ID = "X-User-ID"
HEADER_UPSTREAM_TOKEN = "X-Upstream-Token"

# ============================================================================
# Coze Event Names
# ============================================================================

COZE_EVENT_MESSAGE_DELTA = "conversation.message.delta"
COZE_EVENT_MESSAGE_COMPLETED = "conversation.message.completed"
COZE_EVENT_CHAT_CREATED = "conversation.chat.created"
COZE_EVENT_CHAT_IN_PROGRESS = "conversation.chat.in_progress"
COZE_EVENT_CHAT_COMPLETED = "conversation.chat.completed"
COZE_EVENT_CHAT_FAILED = "conversation.chat.failed"
COZE_EVENT_ERROR = "error"
COZE_EVENT_DONE = "done"

# Message types carried by Coze message events
MESSAGE_TYPE_ANSWER = "answer"
MESSAGE_TYPE_FOLLOW_UP = "follow_up"
MESSAGE_TYPE_VERBOSE = "verbose"
