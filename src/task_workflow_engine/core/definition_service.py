"""
工作流定义服务

定义一旦激活即不可修改；同名定义同一时刻最多一个激活版本。
"""
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from ..exceptions import DefinitionNotFoundError, WorkflowValidationError
from ..models.definition import DefinitionStatus, WorkflowDefinition, WorkflowGraph
from ..storage.repository import WorkflowDefinitionRepository
from .parser import WorkflowParser


class WorkflowDefinitionService:
    """工作流定义服务"""

    def __init__(
        self,
        definition_repository: WorkflowDefinitionRepository,
        parser: WorkflowParser,
        logger: logging.Logger = None
    ):
        self.definition_repository = definition_repository
        self.parser = parser
        self.logger = logger or logging.getLogger(__name__)
        self._graph_cache: Dict[Tuple[int, Any], WorkflowGraph] = {}

    async def register_definition(
        self,
        source: Union[str, Path, Dict[str, Any], WorkflowDefinition],
        activate: bool = False
    ) -> WorkflowDefinition:
        """注册定义，节点图和执行器在此校验"""
        if isinstance(source, WorkflowDefinition):
            definition = source
            self.parser.parse_graph(definition.definition)
        else:
            definition = self.parser.parse(source)

        existing = await self.definition_repository.find_by_name_and_version(
            definition.name, definition.version
        )
        if existing is not None:
            raise WorkflowValidationError(
                f"Workflow definition {definition.name}@{definition.version} already exists"
            )

        definition.status = DefinitionStatus.DRAFT
        created = await self.definition_repository.create(definition)
        self.logger.info(
            f"Registered workflow definition {created.name}@{created.version} (id={created.id})"
        )

        if activate:
            created = await self.activate_definition(created.id)
        return created

    async def update_definition(
        self,
        definition_id: int,
        source: Union[str, Path, Dict[str, Any]]
    ) -> WorkflowDefinition:
        """修改草稿定义"""
        current = await self.get_definition(definition_id)
        if current.status != DefinitionStatus.DRAFT:
            raise WorkflowValidationError(
                f"Workflow definition {current.name}@{current.version} is "
                f"{current.status.value} and can no longer be modified"
            )

        parsed = self.parser.parse(source)
        if (parsed.name, parsed.version) != (current.name, current.version):
            raise WorkflowValidationError("Name and version of a definition cannot be changed")

        parsed.id = current.id
        parsed.status = current.status
        parsed.created_at = current.created_at
        await self.definition_repository.update(parsed)
        return await self.get_definition(definition_id)

    async def activate_definition(self, definition_id: int) -> WorkflowDefinition:
        """激活定义，同名的旧激活版本标记为 deprecated"""
        definition = await self.get_definition(definition_id)
        self.parser.parse_graph(definition.definition)

        for other in await self.definition_repository.find_by_name(definition.name):
            if other.id != definition.id and other.status == DefinitionStatus.ACTIVE:
                await self.definition_repository.update_status(other.id, DefinitionStatus.DEPRECATED)
                self.logger.info(f"Deprecated workflow definition {other.name}@{other.version}")

        await self.definition_repository.update_status(definition.id, DefinitionStatus.ACTIVE)
        self.logger.info(f"Activated workflow definition {definition.name}@{definition.version}")
        return await self.get_definition(definition_id)

    async def deprecate_definition(self, definition_id: int) -> bool:
        return await self.definition_repository.update_status(
            definition_id, DefinitionStatus.DEPRECATED
        )

    async def archive_definition(self, definition_id: int) -> bool:
        return await self.definition_repository.update_status(
            definition_id, DefinitionStatus.ARCHIVED
        )

    async def get_definition(self, definition_id: int) -> WorkflowDefinition:
        definition = await self.definition_repository.find_by_id(definition_id)
        if definition is None:
            raise DefinitionNotFoundError(f"Workflow definition not found: {definition_id}")
        return definition

    async def find_definition(self, definition_id: int) -> Optional[WorkflowDefinition]:
        return await self.definition_repository.find_by_id(definition_id)

    async def get_active_definition(self, name: str) -> Optional[WorkflowDefinition]:
        return await self.definition_repository.find_active_by_name(name)

    async def resolve_definition(self, name: str, version: str = None) -> Optional[WorkflowDefinition]:
        """按名称解析定义：指定版本时精确匹配，否则取激活版本"""
        if version:
            return await self.definition_repository.find_by_name_and_version(name, version)
        return await self.definition_repository.find_active_by_name(name)

    def load_graph(self, definition: WorkflowDefinition) -> WorkflowGraph:
        """解析并校验定义的节点图，结果按 (id, updated_at) 缓存"""
        cache_key = (definition.id, definition.updated_at)
        graph = self._graph_cache.get(cache_key)
        if graph is None:
            graph = self.parser.parse_graph(definition.definition)
            if definition.id is not None:
                self._graph_cache[cache_key] = graph
        return graph
