"""
Storage subsystem.

Components:
- kv_store.py: host key-value stores with a per-origin capacity ceiling
- gateway.py: cached, debounced, quota-recovering envelope persistence
"""
