"""Registry mapping workflow names to compiled workflows."""

from __future__ import annotations

from typing import Dict, List, Optional

from .workflow import Workflow


class WorkflowRegistry:
    """Name -> :class:`Workflow` lookup used by workers and dispatchers."""

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}

    def register(self, workflow: Workflow, name: Optional[str] = None) -> Workflow:
        """Add ``workflow`` under ``name`` (defaults to the workflow's name).

        Re-registering the same workflow object is a no-op; registering a
        different workflow under a taken name raises ``ValueError``.
        """
        key = name or workflow.name
        existing = self._workflows.get(key)
        if existing is not None and existing is not workflow:
            raise ValueError(f"Workflow '{key}' is already registered")
        self._workflows[key] = workflow
        return workflow

    def get(self, name: str) -> Optional[Workflow]:
        return self._workflows.get(name)

    def names(self) -> List[str]:
        return sorted(self._workflows)

    def unregister(self, name: str) -> None:
        self._workflows.pop(name, None)

    def __contains__(self, name: object) -> bool:
        return name in self._workflows

    def __len__(self) -> int:
        return len(self._workflows)


# Process-wide default registry; workers fall back to it when none is given.
REGISTRY = WorkflowRegistry()


def register_workflow(workflow: Workflow, name: Optional[str] = None) -> Workflow:
    """Add ``workflow`` to ``REGISTRY``."""
    return REGISTRY.register(workflow, name)


__all__ = ["WorkflowRegistry", "REGISTRY", "register_workflow"]
