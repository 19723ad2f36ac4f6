"""Checkpoint subsystem: snapshots, point-in-time restore and retention.

Key Components:
    - CheckpointService: Create, restore, query and prune checkpoints
    - Checkpoint / CheckpointSnapshot: Stored checkpoint records
    - RestoreOptions / RestoreResult / PruneResult: Operation inputs and results

Example:
    >>> from patchflow.checkpoint.service import CheckpointService
    >>> service = CheckpointService(store)
    >>> checkpoint = await service.create_manual_checkpoint("wf-1", "before refactor", "alice")
"""
