"""flowengine - CRM workflow automation runtime.

Interprets user-authored automation graphs (triggers, actions, conditions,
delays, goals, split tests) against per-contact state.
"""

__version__ = "0.1.0"
