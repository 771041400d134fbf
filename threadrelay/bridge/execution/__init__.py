"""Execution pipeline for the bridge.

This package contains the per-run components:

- **runtime**: Agent runtime interface and the claude-agent-sdk adapter
- **coordinator**: Busy gate, run loop and teardown (StreamOrchestrator)
- **stream**: Live chat rendering of a run (text, status embed, tool cards)
- **permissions**: Permission gate (question / plan approval / auto-allow)
- **questions**: Interactive question prompts and their reply protocol
- **plans**: Plan approval prompts
- **diffs**: Diff store and the Show/Hide Diff buttons
- **cards**, **tools**, **text**, **ui**: Rendering helpers
- **attachments**: Inbound attachment download
"""
