"""
JSON Schema validation
"""
import json
import logging
from typing import Any, Dict, List

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError


logger = logging.getLogger(__name__)


class SchemaValidator:
    """Draft 7 validator with a per-schema cache"""

    def __init__(self):
        self.validators_cache: Dict[str, Draft7Validator] = {}

    def validate(self, data: Any, schema: Dict[str, Any]) -> List[str]:
        """
        Validate ``data`` against ``schema``.

        Returns:
            A list of error strings; empty when the data is valid.
        """
        validator = self._get_validator(schema)
        if isinstance(validator, str):
            return [validator]

        errors = []
        for error in sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path)):
            path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
            errors.append(f"{path}: {error.message}")
        return errors

    def check_schema(self, schema: Dict[str, Any]) -> List[str]:
        """Validate a schema document itself"""
        try:
            Draft7Validator.check_schema(schema)
        except SchemaError as e:
            return [f"Invalid schema: {e.message}"]
        return []

    def _get_validator(self, schema: Dict[str, Any]):
        schema_str = json.dumps(schema, sort_keys=True, default=str)
        if schema_str not in self.validators_cache:
            problems = self.check_schema(schema)
            if problems:
                logger.warning(problems[0])
                return problems[0]
            self.validators_cache[schema_str] = Draft7Validator(schema)
        return self.validators_cache[schema_str]

    @staticmethod
    def format_validation_errors(errors: List[str], max_errors: int = None) -> str:
        """Human readable summary"""
        if not errors:
            return "No validation errors"
        shown = errors[:max_errors] if max_errors else errors
        text = "; ".join(shown)
        if max_errors and len(errors) > max_errors:
            text += f" ... and {len(errors) - max_errors} more"
        return text
