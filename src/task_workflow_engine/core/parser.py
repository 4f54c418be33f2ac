"""
工作流定义解析器
"""
import json
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError

from ..exceptions import WorkflowParseError, WorkflowValidationError
from ..models.definition import WorkflowDefinition, WorkflowGraph
from .executors import ExecutorRegistry
from .validators import SchemaValidator

GRAPH_KEYS = ("nodes", "connections", "inputs", "input_schema", "config")


class WorkflowParser:
    """工作流定义解析器"""

    def __init__(self, executor_registry: Optional[ExecutorRegistry] = None):
        self.executor_registry = executor_registry
        self.schema_validator = SchemaValidator()
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> WorkflowDefinition:
        """
        解析工作流定义文档

        Args:
            source: 文件路径、YAML/JSON 字符串或字典

        Returns:
            WorkflowDefinition: 状态为 draft 的定义记录，节点图已校验
        """
        if isinstance(source, dict):
            return self._parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            path = Path(source)
            if "\n" not in source and path.suffix and path.is_file():
                return self.parse_file(path)
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Union[str, Path]) -> WorkflowDefinition:
        """解析定义文件"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        return self._parse_dict(self.parsers[suffix](content))

    def parse_string(self, content: str) -> WorkflowDefinition:
        """解析 YAML 或 JSON 字符串（JSON 是 YAML 的子集）"""
        return self._parse_dict(self._parse_yaml(content))

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Invalid YAML: {e}")
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")
        return data

    def _parse_json(self, content: str) -> Dict[str, Any]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Invalid JSON: {e}")
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be an object")
        return data

    def _parse_dict(self, data: Dict[str, Any]) -> WorkflowDefinition:
        """解析字典，兼容顶层 workflow 包裹"""
        if "workflow" in data and isinstance(data["workflow"], dict):
            data = data["workflow"]

        for key in ("name", "version"):
            if not data.get(key):
                raise WorkflowValidationError(f"Workflow definition is missing '{key}'")

        graph_data = {key: data[key] for key in GRAPH_KEYS if key in data}
        self.parse_graph(graph_data)

        return WorkflowDefinition(
            name=str(data["name"]),
            version=str(data["version"]),
            definition=graph_data,
            description=data.get("description"),
            category=data.get("category"),
            tags=list(data.get("tags") or []),
            timeout_seconds=data.get("timeout_seconds"),
            max_retries=int(data.get("max_retries", 0)),
            retry_delay_seconds=float(data.get("retry_delay_seconds", 0)),
            created_by=data.get("created_by")
        )

    def parse_graph(self, definition: Dict[str, Any]) -> WorkflowGraph:
        """把定义中的节点图解析为强类型结构，并校验执行器"""
        try:
            graph = WorkflowGraph.model_validate(definition)
        except ValidationError as e:
            raise WorkflowValidationError(f"Invalid workflow graph: {e}")

        if graph.input_schema is not None:
            errors = self.schema_validator.check_schema(graph.input_schema)
            if errors:
                raise WorkflowValidationError(f"Invalid input_schema: {errors[0]}")

        if self.executor_registry is not None:
            self.executor_registry.validate_graph(graph)
        return graph
