"""Project store.

Projects group aggregates and carry default generation settings. Only
the operations the response gateway needs are provided here.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Optional

from shared.logging import get_logger
from shared.models import GenerationSettings, Project

logger = get_logger(__name__)

PROJECT_NAME_LENGTH = 50


def project_name_from_prompt(prompt: str) -> str:
    """Default project name: the start of the prompt."""
    prompt = prompt.strip()
    if len(prompt) > PROJECT_NAME_LENGTH:
        return prompt[:PROJECT_NAME_LENGTH] + "..."
    return prompt


class ProjectStore:
    """In-process project store."""

    def __init__(self) -> None:
        self._projects: dict[str, Project] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        owner_id: str,
        name: str,
        settings: Optional[GenerationSettings] = None
    ) -> Project:
        """Create a project owned by ``owner_id``."""
        project = Project(
            id=uuid.uuid4().hex,
            name=name,
            owner_id=owner_id,
            settings=settings or GenerationSettings(),
        )

        async with self._lock:
            self._projects[project.id] = project

        logger.info("Project created", project_id=project.id, owner=owner_id)
        return project.model_copy(deep=True)

    async def get(self, project_id: str, owner_id: Optional[str] = None) -> Optional[Project]:
        project = self._projects.get(project_id)
        if project is None:
            return None
        if owner_id is not None and project.owner_id != owner_id:
            return None
        return project.model_copy(deep=True)

    async def set_enabled_models(self, project_id: str, models: list[str]) -> Optional[Project]:
        """
        Replace a project's default provider list.

        Returns:
            Updated project, or None if it does not exist
        """
        async with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                return None
            project.settings.enabled_models = list(models)
            project.updated_at = datetime.utcnow()

        logger.info("Project providers updated", project_id=project_id, providers=models)
        return project.model_copy(deep=True)
