"""
camelCase pydantic bases shared by API bodies, persisted rows and config.

Fields are declared in snake_case and exchanged as camelCase everywhere:
HTTP bodies, JSON columns in the metadata store and connection YAML.
"""

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict
from humps import camelize

_CAMEL_CONFIG = dict(
    alias_generator=camelize,
    populate_by_name=True,  # snake_case input is accepted too
    from_attributes=True,
)


def to_camel(string: str) -> str:
    return camelize(string)


class CamelCaseModel(BaseModel):
    """
    Model read and written with camelCase keys.

    Example:
        class PoolingConfig(CamelCaseModel):
            idle_timeout_millis: int  # "idleTimeoutMillis" on the wire
    """
    model_config = ConfigDict(**_CAMEL_CONFIG)

    def to_json_dict(self) -> Dict[str, Any]:
        """camelCase, JSON-safe dict (datetimes as ISO strings, enums as values)."""
        return self.model_dump(by_alias=True, mode="json")


class FrozenCamelCaseModel(CamelCaseModel):
    """Immutable, hashable variant used for query configs and history rows."""
    model_config = ConfigDict(**_CAMEL_CONFIG, frozen=True)
