"""
Rules package.

Defines the workflow model, the condition matcher and the engine that ties
triggers, conditions and actions together.

Modules of interest:
- models: Data classes for records, workflows, runs, jobs and cadences.
- conditions: Condition tree evaluation and trigger gating helpers.
- engine: Workflow execution, skip rules, run logging and macros.
"""
