"""
taskkeep: local-first task tracking core.

Subsystems:
- tasks/: data model, validation and the Task Store (the only mutation surface)
- storage/: host key-value stores and the capacity-aware Persistence Gateway
- sync/: offline queue, remote client and the Sync Engine
- cli/, connectors/: composition root and an interactive console
"""

__version__ = "0.3.0"
