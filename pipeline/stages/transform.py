"""
Transform stage: apply a transformation's ordered field operations.

Supported operation types:
    CAST         configuration.targetType in INTEGER, FLOAT, STRING, BOOLEAN
    TOSTRING     stringify the field (JSON for objects/arrays)
    CONCATENATE  configuration.fields joined by configuration.separator into
                 configuration.targetField (defaults to the operation's field)

Input data is never mutated; every operation works on a deep copy.
"""

import copy
import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import TransformationError
from models.source import Transformation
from pipeline.base import ApiData

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}
_FALSE_STRINGS = {"false", "0", "no", "n", "off", ""}


def _cast(value: Any, target_type: str) -> Any:
    if value is None:
        return None

    if target_type == "INTEGER":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, float):
            return int(value)
        return int(str(value).strip())

    if target_type == "FLOAT":
        return float(value)

    if target_type == "STRING":
        return _to_string(value)

    if target_type == "BOOLEAN":
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ValueError(f"cannot interpret {value!r} as boolean")

    raise ValueError(f"unsupported target type {target_type!r}")


def _to_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class Transformer:
    """Applies a transformation's configuration to extracted data."""

    SUPPORTED_TYPES = ("CAST", "TOSTRING", "CONCATENATE")

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def transform(self, transformation_id: Optional[int], data: ApiData) -> ApiData:
        """
        Pass data through unchanged when no transformation is configured.

        Raises:
            TransformationError: Unknown operation type, malformed operation
                or a value that cannot be converted
        """
        if transformation_id is None:
            return data

        result = await self.db.execute(
            select(Transformation).where(
                Transformation.id == transformation_id,
                Transformation.is_active.is_(True)
            )
        )
        transformation = result.scalar_one_or_none()

        if transformation is None:
            logger.warning(
                f"Transformation {transformation_id} not found or inactive, "
                f"passing data through unchanged"
            )
            return data

        return self.apply(transformation.configuration or [], data, transformation_id)

    def apply(
        self,
        operations: List[Dict[str, Any]],
        data: ApiData,
        transformation_id: Optional[int] = None
    ) -> ApiData:
        if not isinstance(operations, list):
            raise TransformationError(
                "Transformation configuration must be a list of operations",
                context={"transformation_id": transformation_id}
            )

        transformed = copy.deepcopy(data)

        for index, operation in enumerate(operations):
            context = {"transformation_id": transformation_id, "operation": index}

            if not isinstance(operation, dict) or not operation.get("field"):
                raise TransformationError("Malformed transformation operation", context=context)

            op_type = str(operation.get("type", "")).upper()
            context["type"] = op_type
            if op_type not in self.SUPPORTED_TYPES:
                raise TransformationError(
                    f"Unknown transformation type: {operation.get('type')}", context=context
                )

            api_name = operation.get("api")
            targets = [api_name] if api_name else list(transformed.keys())

            for name in targets:
                for record in transformed.get(name, []):
                    try:
                        self._apply_operation(op_type, operation, record)
                    except TransformationError:
                        raise
                    except (TypeError, ValueError) as e:
                        raise TransformationError(
                            f"{op_type} failed on field {operation['field']}: {e}",
                            context={**context, "api": name},
                            original_exception=e
                        )

        logger.info(f"Applied {len(operations)} transformation operations")
        return transformed

    @staticmethod
    def _apply_operation(op_type: str, operation: Dict[str, Any], record: Dict[str, Any]) -> None:
        field_name = operation["field"]
        config = operation.get("configuration") or {}

        if op_type == "CAST":
            target_type = str(config.get("targetType", "")).upper()
            if not target_type:
                raise TransformationError(
                    "CAST requires configuration.targetType", context={"field": field_name}
                )
            if field_name in record:
                record[field_name] = _cast(record[field_name], target_type)

        elif op_type == "TOSTRING":
            if field_name in record:
                record[field_name] = _to_string(record[field_name])

        elif op_type == "CONCATENATE":
            fields = config.get("fields")
            if not isinstance(fields, list) or not fields:
                raise TransformationError(
                    "CONCATENATE requires configuration.fields", context={"field": field_name}
                )
            separator = config.get("separator", " ")
            parts = [_to_string(record.get(name)) for name in fields]
            record[config.get("targetField") or field_name] = separator.join(
                part for part in parts if part is not None
            )
