"""Runtime orchestration (scheduler, state machine, usage metering).

This layer is responsible for:
- picking the next pending run from the registry
- driving it through open escrow -> workload -> finalize
- recording a checkpoint after every transition

It should remain independent from the HTTP layer (`src/api`), so both CLI and API
can reuse the same execution logic.
"""
