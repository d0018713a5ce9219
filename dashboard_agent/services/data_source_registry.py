"""
Data-Source Registry.

Resolves the ``data_source`` name carried by a sub-query to the metadata the
execution controller needs: how to reach it, which auth scope it requires,
which parameters identify the caller's tenant and the parameter schema.

The registry is read-only while a plan executes. Sources are registered at
startup, either from the built-in defaults or from a JSON file
(``DATA_SOURCE_REGISTRY_PATH``).
"""
import json
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

from pydantic import BaseModel, Field

from dashboard_agent import config
from dashboard_agent.errors import DataSourceNotFoundError
from dashboard_agent.parameters.validators import ParamSpec, ParamType

logger = logging.getLogger("data_source_registry")


class DataSourceKind(str, Enum):
    REST = "rest"
    TRANSFORM = "transform"
    TOOL = "tool"


class DataSourceDescriptor(BaseModel):
    """
    Connection/auth metadata and parameter schema for one data source.

    ``connection_info`` depends on ``kind``: REST sources carry ``method``
    and ``path``; tool sources carry ``tool`` (a LangChain tool name);
    transform sources carry ``operation`` (``filter`` or ``aggregate``).
    """
    name: str = Field(..., min_length=1)
    kind: DataSourceKind = DataSourceKind.REST
    description: str = ""
    connection_info: Dict[str, Any] = Field(default_factory=dict)
    required_auth_scope: Optional[str] = Field(default=None, description="Credential scope needed, e.g. 'enterprise'")
    identifying_params: List[str] = Field(default_factory=list, description="Any one of these identifies the tenant")
    param_schema: Dict[str, ParamSpec] = Field(default_factory=dict)


class DataSourceRegistry(Protocol):

    def resolve(self, data_source: str) -> DataSourceDescriptor:
        ...


def default_data_sources() -> List[DataSourceDescriptor]:
    """Well-known sources referenced by the planner's pattern registry."""
    return [
        DataSourceDescriptor(
            name="/api/courses",
            description="Course catalogue",
            connection_info={"method": "GET", "path": "/api/courses"},
            param_schema={"limit": ParamSpec(type=ParamType.INTEGER)},
        ),
        DataSourceDescriptor(
            name="/api/enrollments",
            description="Course enrollments",
            connection_info={"method": "GET", "path": "/api/enrollments"},
            param_schema={
                "course_id": ParamSpec(type=ParamType.STRING),
                "period": ParamSpec(type=ParamType.DATERANGE),
            },
        ),
        DataSourceDescriptor(
            name="/api/generic-search",
            description="Free-text search across the platform",
            connection_info={"method": "GET", "path": "/api/generic-search"},
            param_schema={"query": ParamSpec(type=ParamType.STRING)},
        ),
        DataSourceDescriptor(
            name="/api/companies/profile",
            description="Company profile (enterprise scoped)",
            connection_info={"method": "GET", "path": "/api/companies/profile"},
            required_auth_scope="enterprise",
            identifying_params=["cnpj", "company_id", "company_name"],
            param_schema={"cnpj": ParamSpec(type=ParamType.STRING, description="Company CNPJ")},
        ),
        DataSourceDescriptor(
            name="filter",
            kind=DataSourceKind.TRANSFORM,
            description="Filter upstream records by field equality",
            connection_info={"operation": "filter"},
            param_schema={
                "location": ParamSpec(type=ParamType.STRING),
                "state": ParamSpec(type=ParamType.STRING),
            },
        ),
        DataSourceDescriptor(
            name="aggregate",
            kind=DataSourceKind.TRANSFORM,
            description="Count upstream records grouped by a field",
            connection_info={"operation": "aggregate"},
            param_schema={
                "group_by": ParamSpec(
                    type=ParamType.ENUM,
                    required=True,
                    options=["category", "month", "location", "state", "status"],
                    user_resolvable=False,
                ),
            },
        ),
    ]


class InMemoryDataSourceRegistry:
    """Dictionary-backed registry."""

    def __init__(self, descriptors: Optional[Iterable[DataSourceDescriptor]] = None, include_defaults: bool = True):
        self._sources: Dict[str, DataSourceDescriptor] = {}
        if include_defaults:
            for descriptor in default_data_sources():
                self.register(descriptor)
        for descriptor in descriptors or []:
            self.register(descriptor)
        logger.info(f"📚 Data-source registry ready with {len(self._sources)} sources")

    def register(self, descriptor: DataSourceDescriptor) -> None:
        if descriptor.name in self._sources:
            logger.info(f"Overriding data source '{descriptor.name}'")
        self._sources[descriptor.name] = descriptor

    def resolve(self, data_source: str) -> DataSourceDescriptor:
        try:
            return self._sources[data_source]
        except KeyError:
            raise DataSourceNotFoundError(data_source) from None

    def names(self) -> List[str]:
        return sorted(self._sources)

    def __contains__(self, data_source: str) -> bool:
        return data_source in self._sources

    @classmethod
    def from_json(cls, path: str, include_defaults: bool = True) -> "InMemoryDataSourceRegistry":
        """
        Load descriptors from a JSON file.

        Accepts either a list of descriptors or ``{"data_sources": [...]}``.
        Entries override defaults with the same name.
        """
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
        entries = payload.get("data_sources", []) if isinstance(payload, dict) else payload
        descriptors = [DataSourceDescriptor.model_validate(entry) for entry in entries]
        logger.info(f"Loaded {len(descriptors)} data sources from {path}")
        return cls(descriptors, include_defaults=include_defaults)


def load_registry(path: Optional[str] = None) -> InMemoryDataSourceRegistry:
    """Registry from ``path`` (or DATA_SOURCE_REGISTRY_PATH), defaults otherwise."""
    path = path or config.DATA_SOURCE_REGISTRY_PATH
    if path:
        return InMemoryDataSourceRegistry.from_json(path)
    return InMemoryDataSourceRegistry()
