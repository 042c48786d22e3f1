"""HTTP API layer (FastAPI).

This module exposes the runner's HTTP surface:
- enqueue runs and retry failed ones
- list/fetch runs and their audit events
- health and summary snapshots

The API is intentionally thin: core behavior lives in `src/runtime` and `src/storage`.
"""
