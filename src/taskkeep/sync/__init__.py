"""
Sync subsystem.

Components:
- sync_models.py: offline operations, conflict records, reports, merge fallback
- offline_queue.py: persistent FIFO of local mutations awaiting the remote service
- remote_client.py: httpx client for the versioned Remote Task Service
- sync_engine.py: connectivity state, queue replay, pull and conflict resolution
"""
