"""
工作流引擎异常定义
"""


class WorkflowEngineError(Exception):
    """工作流引擎基础异常"""
    pass


class WorkflowParseError(WorkflowEngineError):
    """工作流定义解析异常"""
    pass


class WorkflowValidationError(WorkflowEngineError):
    """工作流定义验证异常"""
    pass


class WorkflowExecutionError(WorkflowEngineError):
    """工作流执行异常"""
    pass


class NodeExecutionError(WorkflowExecutionError):
    """节点执行异常"""
    def __init__(self, node_id: str, message: str, cause: Exception = None):
        self.node_id = node_id
        self.cause = cause
        super().__init__(f"Node '{node_id}' execution failed: {message}")


class WorkflowTimeoutError(WorkflowExecutionError):
    """工作流超时异常"""
    pass


class WorkflowCancelledError(WorkflowExecutionError):
    """工作流取消异常，reason 为 FailureReason"""
    def __init__(self, message: str, reason=None):
        self.reason = reason
        super().__init__(message)


class ExecutorNotFoundError(WorkflowValidationError):
    """执行器未注册"""
    def __init__(self, executor_name: str, node_id: str = None):
        self.executor_name = executor_name
        self.node_id = node_id
        msg = f"Executor '{executor_name}' is not registered"
        if node_id:
            msg += f" (node '{node_id}')"
        super().__init__(msg)


class DefinitionNotFoundError(WorkflowEngineError):
    """工作流定义不存在"""
    pass


class InstanceNotFoundError(WorkflowEngineError):
    """工作流实例不存在"""
    pass
