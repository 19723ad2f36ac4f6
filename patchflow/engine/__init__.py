"""Workflow lifecycle engine.

This package holds the pure transition function and the driver that wraps it
with storage, job dispatch, checkpointing and failure diagnosis.

Key Components:
    - transition: Pure, total state machine step
    - TransitionContext / TransitionResult / JobSpec: Its inputs and outputs
    - parse_event: Validates raw events into the TransitionEvent union
    - WORKFLOW_STAGES: Ordered stage table for checkpoint bookkeeping
    - WorkflowDriver: Serializes events per workflow and persists transitions

Example:
    >>> from patchflow.engine.events import parse_event
    >>> from patchflow.engine.driver import WorkflowDriver
    >>> outcome = await driver.handle_event("wf-1", parse_event(raw_event))
"""
