"""
Active datasource resolution.

Datasources themselves are managed elsewhere; the workflow only asks which
datasource, if any, is active for a scope.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field

from ..core.config import settings


class DatasourceConfig(BaseModel):
    """Connection parameters of a relational datasource."""
    name: str = Field(..., description="Datasource name shown in the schema")
    url: str = Field(..., description="SQLAlchemy connection URL")
    dialect: str = Field(default="mysql", description="SQL dialect of the datasource")


class DatasourceResolver(ABC):

    @abstractmethod
    async def get_active_datasource(self, scope_id: str) -> Optional[DatasourceConfig]:
        """Active datasource of ``scope_id``, or None when the scope has none."""


class SettingsDatasourceResolver(DatasourceResolver):
    """Every scope shares the datasource configured by DATASOURCE_URL."""

    def __init__(self, url: Optional[str] = None, dialect: Optional[str] = None):
        self.url = url if url is not None else settings.datasource_url
        self.dialect = dialect or settings.datasource_dialect

    async def get_active_datasource(self, scope_id):
        if not self.url:
            return None
        name = self.url.rsplit("/", 1)[-1] or self.dialect
        return DatasourceConfig(name=name, url=self.url, dialect=self.dialect)
