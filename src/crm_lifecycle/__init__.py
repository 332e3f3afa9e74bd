"""CRM entity lifecycle state machines.

Provides a runtime that drives long-lived business records (support cases,
leads, contracts) through declarative state machine definitions:
- guarded, event-driven transitions
- state-entry side effects with retry and idempotency
- durable wall-clock timeouts fired by a background sweep
"""

__version__ = "0.1.0"

from crm_lifecycle.statemachine.config import LifecycleSettings

__all__ = ["__version__", "LifecycleSettings"]
