"""Context management for executor sessions.

Modules:
    segmenter     - Splits oversized input at semantic breakpoints
    tokens        - TokenEstimator, chars-per-token budget classification
    compactor     - HistoryCompactor, summary + verbatim tail
    orchestrator  - ContextOrchestrator, one turn end to end
    protocols     - Executor, Summarizer, TranscriptAccessor
    schemas       - Pydantic DTOs shared with the store and HTTP layer
    errors        - ParleyError hierarchy

Import from the submodules directly; this package does not re-export so
that parley.config can depend on parley.context.errors without a cycle.
"""
