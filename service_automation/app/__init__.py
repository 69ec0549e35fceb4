"""
Automation Service package.

This package evaluates CRM records against per-organization workflows and
executes the matching actions. It provides:

- app.main: API surface for workflows, macros, cadences, runs, jobs and the
  scheduler tick.
- app.rules: Workflow model, condition matcher and the workflow engine.
- app.actions: Action executor, owner assignment and webhook delivery.
- app.scheduler: Job queue, tick processor and cadence processing.
- app.persistence: In-memory and PostgreSQL stores.

Guidelines:
- Every read and write is scoped by organization.
- Action failures are recorded in the run log, never raised to callers.
- Dry-run evaluation must not produce side effects.
"""
