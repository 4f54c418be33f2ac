"""
SQLAlchemy 数据库模型定义
"""
from sqlalchemy import (
    Column, String, Text, Integer, Float, DateTime, ForeignKey,
    UniqueConstraint, CheckConstraint, Index, JSON
)
from sqlalchemy.orm import declarative_base

from ..models.instance import utcnow


Base = declarative_base()


class WorkflowDefinitionRow(Base):
    """工作流定义表"""
    __tablename__ = 'workflow_definitions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    version = Column(String(50), nullable=False)
    definition = Column(JSON, nullable=False)
    description = Column(Text)
    category = Column(String(100))
    tags = Column(JSON, default=list)
    status = Column(String(20), nullable=False, default='draft')
    timeout_seconds = Column(Float)
    max_retries = Column(Integer, nullable=False, default=0)
    retry_delay_seconds = Column(Float, nullable=False, default=0)
    created_by = Column(String(255))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('name', 'version', name='unique_workflow_name_version'),
        CheckConstraint(
            "status IN ('draft', 'active', 'deprecated', 'archived')",
            name='check_definition_status'
        ),
        Index('idx_workflow_definitions_name_status', 'name', 'status'),
    )


class WorkflowInstanceRow(Base):
    """工作流实例表"""
    __tablename__ = 'workflow_instances'

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_definition_id = Column(
        Integer, ForeignKey('workflow_definitions.id', ondelete='RESTRICT'), nullable=False
    )
    name = Column(String(255), nullable=False)
    instance_type = Column(String(255), nullable=False)
    external_id = Column(String(255), unique=True)
    business_key = Column(String(255))
    mutex_key = Column(String(255))
    status = Column(String(20), nullable=False, default='pending')
    input_data = Column(JSON, default=dict)
    output_data = Column(JSON, default=dict)
    context_data = Column(JSON, default=dict)
    current_node_id = Column(String(255))
    checkpoint_data = Column(JSON)
    assigned_engine_id = Column(String(255))
    last_heartbeat = Column(DateTime)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    interrupted_at = Column(DateTime)
    error_message = Column(Text)
    error_details = Column(JSON)
    error_node_id = Column(String(255))
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'paused', 'completed', 'failed', 'cancelled')",
            name='check_instance_status'
        ),
        Index('idx_workflow_instances_status', 'status'),
        Index('idx_workflow_instances_type_status', 'instance_type', 'status'),
        Index('idx_workflow_instances_business_key', 'business_key'),
        Index('idx_workflow_instances_mutex_key', 'mutex_key'),
        Index('idx_workflow_instances_heartbeat', 'status', 'last_heartbeat'),
    )


class NodeInstanceRow(Base):
    """节点实例表"""
    __tablename__ = 'node_instances'

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_instance_id = Column(
        Integer, ForeignKey('workflow_instances.id', ondelete='CASCADE'), nullable=False
    )
    node_id = Column(String(255), nullable=False)
    node_name = Column(String(255))
    node_type = Column(String(20), nullable=False)
    executor = Column(String(255))
    status = Column(String(20), nullable=False, default='pending')
    input_data = Column(JSON, default=dict)
    output_data = Column(JSON, default=dict)
    error_message = Column(Text)
    error_details = Column(JSON)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=0)
    timeout_seconds = Column(Float)
    parent_node_id = Column(Integer, ForeignKey('node_instances.id', ondelete='CASCADE'))
    child_index = Column(Integer)
    progress_data = Column(JSON)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('workflow_instance_id', 'node_id', name='unique_instance_node'),
        CheckConstraint(
            "node_type IN ('simple', 'loop', 'parallel', 'sub_process')",
            name='check_node_type'
        ),
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name='check_node_status'
        ),
        Index('idx_node_instances_parent', 'parent_node_id', 'status'),
    )


class ExecutionLockRow(Base):
    """执行锁表"""
    __tablename__ = 'execution_locks'

    lock_key = Column(String(255), primary_key=True)
    owner = Column(String(255), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    lock_type = Column(String(20), nullable=False, default='workflow')
    lock_data = Column(JSON)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "lock_type IN ('workflow', 'instance', 'node', 'resource')",
            name='check_lock_type'
        ),
        Index('idx_execution_locks_expires_at', 'expires_at'),
    )


class ExecutionLogRow(Base):
    """执行日志表"""
    __tablename__ = 'execution_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_instance_id = Column(
        Integer, ForeignKey('workflow_instances.id', ondelete='CASCADE'), nullable=False
    )
    node_instance_id = Column(Integer)
    level = Column(String(10), nullable=False, default='info')
    event_type = Column(String(50), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_execution_logs_instance', 'workflow_instance_id', 'created_at'),
    )
