"""
工作流定义模型

定义记录本身是一个普通的 dataclass，节点图 (definition 字段) 在加载时
由 pydantic 解析为带类型标签的节点联合类型。
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from .instance import NodeType, utcnow


class DefinitionStatus(Enum):
    """工作流定义状态"""
    DRAFT = "draft"
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


class BaseNodeDefinition(BaseModel):
    """节点定义公共字段"""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1, description="节点ID")
    name: Optional[str] = Field(None, description="节点名称")
    description: Optional[str] = None
    input_data: Dict[str, Any] = Field(default_factory=dict, description="节点输入，支持 ${...} 模板")
    timeout_seconds: Optional[float] = Field(None, gt=0, description="节点超时时间")
    max_retries: Optional[int] = Field(None, ge=0, description="最大重试次数")
    retry_delay_seconds: Optional[float] = Field(None, ge=0, description="重试间隔")

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def node_type(self) -> NodeType:
        return NodeType(self.type)

    def executor_names(self) -> List[str]:
        """当前节点直接引用的执行器"""
        return []

    def children(self) -> List["BaseNodeDefinition"]:
        """子节点定义"""
        return []


class SimpleNodeDefinition(BaseNodeDefinition):
    """简单节点：调用一个已注册的执行器"""
    type: Literal["simple"] = "simple"
    executor: str = Field(..., min_length=1, description="执行器名称")
    config: Dict[str, Any] = Field(default_factory=dict)

    def executor_names(self) -> List[str]:
        return [self.executor]


class LoopNodeDefinition(BaseNodeDefinition):
    """循环节点：由数据执行器产生集合，为每个元素创建子节点"""
    type: Literal["loop"] = "loop"
    executor: str = Field(..., min_length=1, description="数据执行器名称")
    config: Dict[str, Any] = Field(default_factory=dict)
    node: "NodeDefinition" = Field(..., description="子节点模板")
    parallel: bool = Field(False, description="是否并行执行子节点")
    max_concurrency: Optional[int] = Field(None, ge=1, description="并行模式下的并发上限")
    error_handling: Literal["continue", "stop"] = Field(
        "continue", description="continue: 尽力执行; stop: 快速失败"
    )

    def executor_names(self) -> List[str]:
        return [self.executor]

    def children(self) -> List[BaseNodeDefinition]:
        return [self.node]


class ParallelNodeDefinition(BaseNodeDefinition):
    """并行节点：静态分支并发执行"""
    type: Literal["parallel"] = "parallel"
    branches: List["NodeDefinition"] = Field(..., min_length=1, description="分支节点")
    max_concurrency: Optional[int] = Field(None, ge=1)
    fail_fast: bool = False

    def children(self) -> List[BaseNodeDefinition]:
        return list(self.branches)


class SubProcessNodeDefinition(BaseNodeDefinition):
    """子流程节点：启动另一个工作流定义"""
    type: Literal["sub_process"] = "sub_process"
    workflow_name: str = Field(..., min_length=1, description="子工作流名称")
    version: Optional[str] = Field(None, description="子工作流版本，缺省使用激活版本")
    input_mapping: Dict[str, Any] = Field(default_factory=dict)
    output_mapping: Dict[str, str] = Field(default_factory=dict)


NodeDefinition = Annotated[
    Union[
        SimpleNodeDefinition,
        LoopNodeDefinition,
        ParallelNodeDefinition,
        SubProcessNodeDefinition,
    ],
    Field(discriminator="type"),
]

LoopNodeDefinition.model_rebuild()
ParallelNodeDefinition.model_rebuild()


class Connection(BaseModel):
    """顶层节点之间的连接"""
    source: str
    target: str


class GraphConfig(BaseModel):
    """工作流级配置"""
    model_config = ConfigDict(extra="allow")

    exclusive: bool = Field(True, description="同类型实例是否互斥")


class WorkflowGraph(BaseModel):
    """工作流节点图"""
    nodes: List[NodeDefinition] = Field(..., min_length=1)
    connections: List[Connection] = Field(default_factory=list)
    inputs: Dict[str, Any] = Field(default_factory=dict, description="输入默认值")
    input_schema: Optional[Dict[str, Any]] = Field(None, description="输入数据的 JSON Schema")
    config: GraphConfig = Field(default_factory=GraphConfig)

    _order: List[str] = PrivateAttr(default_factory=list)

    @model_validator(mode="after")
    def _validate_graph(self) -> "WorkflowGraph":
        seen = set()
        for node in self.iter_nodes():
            if node.id in seen:
                raise ValueError(f"Duplicate node id: {node.id}")
            seen.add(node.id)

        top_level = [node.id for node in self.nodes]
        for conn in self.connections:
            if conn.source not in top_level:
                raise ValueError(f"Connection source '{conn.source}' is not a top-level node")
            if conn.target not in top_level:
                raise ValueError(f"Connection target '{conn.target}' is not a top-level node")

        self._order = self._topological_order(top_level)
        return self

    def _topological_order(self, node_ids: List[str]) -> List[str]:
        """按连接拓扑排序，无依赖关系时保持声明顺序"""
        in_degree = {node_id: 0 for node_id in node_ids}
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
        for conn in self.connections:
            adjacency[conn.source].append(conn.target)
            in_degree[conn.target] += 1

        position = {node_id: i for i, node_id in enumerate(node_ids)}
        ready = sorted((n for n, d in in_degree.items() if d == 0), key=position.get)
        order = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for target in adjacency[current]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    ready.append(target)
            ready.sort(key=position.get)

        if len(order) != len(node_ids):
            raise ValueError("Workflow graph contains a cycle")
        return order

    def iter_nodes(self) -> Iterator[BaseNodeDefinition]:
        """深度优先遍历所有节点定义（含子节点模板）"""
        stack = list(reversed(self.nodes))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children()))

    @property
    def node_order(self) -> List[str]:
        return list(self._order)

    def get_node(self, node_id: str) -> Optional[BaseNodeDefinition]:
        """获取顶层节点定义"""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def first_node_id(self) -> str:
        return self._order[0]

    def next_node_id(self, node_id: str) -> Optional[str]:
        """执行顺序中的下一个顶层节点"""
        if node_id not in self._order:
            return None
        index = self._order.index(node_id)
        if index + 1 < len(self._order):
            return self._order[index + 1]
        return None


@dataclass
class WorkflowDefinition:
    """工作流定义记录"""
    name: str
    version: str
    definition: Dict[str, Any]
    id: Optional[int] = None
    description: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    status: DefinitionStatus = DefinitionStatus.DRAFT
    timeout_seconds: Optional[float] = None
    max_retries: int = 0
    retry_delay_seconds: float = 0.0
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == DefinitionStatus.ACTIVE
