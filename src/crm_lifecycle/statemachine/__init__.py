"""State machine engine for CRM entity lifecycles.

Components, leaves first:
- `expressions`: parse-once guard/formula language
- `definitions`: validated, immutable state machine definitions
- `runtime`: instance store, timeout scheduler, action and transition executors,
  and the event ingress that serializes work per instance
"""

__all__: list[str] = []
