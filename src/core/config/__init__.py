"""
Configuration Module

This module provides centralized, type-safe configuration management
for the streaming chat proxy.

Components:
-----------
- **settings.py**: Pydantic-based configuration with environment variable loading
- **constants.py**: System-wide constants, enums, and magic numbers

Usage:
------
```python
from src.core.config import get_settings
from src.core.config.constants import CircuitState, Stage

settings = get_settings()
ceiling = settings.admission.ADMISSION_MAX_CONCURRENT
state = CircuitState.CLOSED  # "closed"
```

Environment Variables:
---------------------
```bash
# Admission
ADMISSION_MAX_CONCURRENT=5
ADMISSION_MAX_PER_SECOND=10

# Circuit Breaker
CB_FAILURE_THRESHOLD=5
CB_RECOVERY_TIMEOUT=60

# Upstream
COZE_BOT_ID=7312...
COZE_BASE_URL=https://api.coze.cn

# Logging
LOG_LEVEL=INFO
LOG_FORMAT=json
```

Author: System Architect
Date: 2025-12-05
"""

from src.core.config.constants import (
    HEADER_THREAD_ID,
    HEADER_UPSTREAM_TOKEN,
    HEADER_USER_ID,
    CircuitState,
    RequestPriority,
    Stage,
)
from src.core.config.settings import Settings, get_settings, reload_settings

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    "reload_settings",
    # Enums
    "Stage",
    "CircuitState",
    "RequestPriority",
    # HTTP headers
    "HEADER_THREAD_ID",
    "HEADER_USER_ID",
    "HEADER_UPSTREAM_TOKEN",
]
