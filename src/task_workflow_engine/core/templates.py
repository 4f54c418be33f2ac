"""
节点输入模板解析

支持 ${inputs.x}、${context.x}、${item}、${index}、${nodes.<node_id>.x} 引用。
整个字符串恰好是一个表达式时返回原始值，否则做字符串替换。
"""
import re
from typing import Any, Dict

_EXPRESSION = re.compile(r"\$\{([^}]+)\}")


def _lookup(path: str, scope: Dict[str, Any]) -> Any:
    parts = path.strip().split(".")
    result: Any = scope
    for part in parts:
        if isinstance(result, dict):
            result = result.get(part)
        elif isinstance(result, list) and part.isdigit():
            index = int(part)
            result = result[index] if index < len(result) else None
        else:
            return None
        if result is None:
            return None
    return result


def resolve_template(value: Any, scope: Dict[str, Any]) -> Any:
    """递归解析 dict / list / str 中的模板表达式"""
    if isinstance(value, dict):
        return {key: resolve_template(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_template(item, scope) for item in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    whole = _EXPRESSION.fullmatch(value)
    if whole:
        return _lookup(whole.group(1), scope)

    def substitute(match):
        resolved = _lookup(match.group(1), scope)
        return "" if resolved is None else str(resolved)

    return _EXPRESSION.sub(substitute, value)
