from typing import Any, Optional, Union

from pydantic import BaseModel, Field


class RemoteBuildRequest(BaseModel):
    version: int
    project_name: Optional[str] = None
    test_name: Optional[str] = None
    connection: str
    driver: str
    build_hash: str
    snapshot_hash: str
    scenario_hash: str
    config: dict[str, Any] = Field(default_factory=dict)


class ResolvedSettingsResponse(BaseModel):
    connection: str
    driver: Optional[str] = None
    host: Optional[str] = None
    database: Optional[str] = None
    project_name: Optional[str] = None
    test_name: Optional[str] = None
    built_remotely: bool = False
    remote_build_url: Optional[str] = None
    snapshots_enabled: bool = False
    storage_dir: Optional[str] = None
    pre_migration_imports: list[str] = Field(default_factory=list)
    migrations: Union[bool, str] = True
    is_seeding_allowed: bool = False
    seeders: list[str] = Field(default_factory=list)
    using_scenarios: bool = False
    build_hash: Optional[str] = None
    snapshot_hash: Optional[str] = None
    scenario_hash: Optional[str] = None
    database_is_reusable: bool = False
    version: int


class ErrorResponse(BaseModel):
    error: str
    message: str
    remote_version: Optional[int] = None


class HealthResponse(BaseModel):
    status: str
    version: int
