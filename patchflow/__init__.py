"""patchflow: workflow core for reviewed code-change automation.

Subpackages:
    - engine: Pure transition function, event models, stage table, driver
    - checkpoint: Checkpoint creation, restore and pruning
    - diagnosis: Failure context collection, diagnosis and fix proposals
    - llm: Optional LLM collaborator
    - storage: Persistence interface with in-memory and JSON-file stores
"""

__version__ = "0.1.0"
