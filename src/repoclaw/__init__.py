"""Multi-agent repository pipeline core.

This package implements the orchestration core of RepoClaw, providing:
- Pipeline state machine over a key-value store with per-key serialization
- Mode-dependent stage dispatch with bounded retries
- Human approval gates for documentation and pull-request artifacts
- Persistent per-pipeline error log with recoverability classification
- Server-sent event streaming of pipeline progress
"""
