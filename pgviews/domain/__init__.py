from .base import CamelCaseModel, FrozenCamelCaseModel, to_camel

__all__ = [
    "CamelCaseModel",
    "FrozenCamelCaseModel",
    "to_camel",
]
