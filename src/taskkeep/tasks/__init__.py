"""
Task subsystem.

Components:
- task_models.py: Task / TaskEnvelope dataclasses and the envelope codec
- validation.py: pure task text checks
- task_store.py: in-memory ordered collection; the only mutation surface
"""
