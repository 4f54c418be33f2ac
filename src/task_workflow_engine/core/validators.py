"""
Schema验证器

工作流的 input_schema 使用 JSON Schema (Draft 7) 描述。
"""
import json
import logging
from typing import Any, Dict, List

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError


logger = logging.getLogger(__name__)


class SchemaValidator:
    """Schema验证器"""

    def __init__(self):
        self.validators_cache: Dict[str, Draft7Validator] = {}

    def check_schema(self, schema: Dict[str, Any]) -> List[str]:
        """检查 schema 本身是否合法"""
        try:
            Draft7Validator.check_schema(schema)
        except SchemaError as e:
            return [f"Invalid schema: {e.message}"]
        return []

    def validate(self, data: Dict[str, Any], schema: Dict[str, Any]) -> List[str]:
        """
        验证数据是否符合schema定义

        Returns:
            验证错误列表，如果没有错误返回空列表
        """
        schema_str = json.dumps(schema, sort_keys=True)
        validator = self.validators_cache.get(schema_str)
        if validator is None:
            errors = self.check_schema(schema)
            if errors:
                return errors
            validator = self.validators_cache[schema_str] = Draft7Validator(schema)

        errors = []
        for error in validator.iter_errors(data):
            path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
            errors.append(f"{path}: {error.message}")
        return errors
