from __future__ import annotations

import os
from pathlib import Path
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from scanrelay.core.errors import ConfigurationError, ProcessError
from scanrelay.core.filters import DEFAULT_EXCLUDED_PATHS, DEFAULT_PLACEHOLDER_PATTERN, FilterRules
from scanrelay.core.models import Severity, ToolKind
from scanrelay.core.utils import run_cmd

DEFAULT_KINDS = [ToolKind.SBOM, ToolKind.SECRET, ToolKind.CONFIG]

CREDENTIAL_HEADERS = {
    "api_key": "x-api-key",
    "secret_key": "x-secret-key",
    "tenant_key": "x-tenant-key",
}


class ApiCredentials(BaseModel):
    api_key: Optional[str] = Field(default=None, repr=False)
    secret_key: Optional[str] = Field(default=None, repr=False)
    tenant_key: Optional[str] = Field(default=None, repr=False)

    def missing(self) -> List[str]:
        return [name for name in CREDENTIAL_HEADERS if not getattr(self, name)]

    def headers(self) -> dict:
        return {header: getattr(self, name) for name, header in CREDENTIAL_HEADERS.items()}


class Settings(BaseModel):
    scan_root: str
    repo_name: str = "repo"
    workspace_id: Optional[str] = None
    project_id: Optional[str] = None
    api_base_url: Optional[str] = None
    credentials: ApiCredentials = ApiCredentials()
    debug: bool = False
    display_name: str = "sbom"
    branch_name: str = "main"
    kinds: List[ToolKind] = list(DEFAULT_KINDS)
    scan_timeout: int = 600
    upload_timeout: float = 90.0
    upload_retries: int = 0
    upload_backoff: float = 1.0
    parallel: bool = False
    upload: bool = True
    fail_on: Severity = Severity.CRITICAL
    sbom_project_type: Optional[str] = None
    gitleaks_config: Optional[str] = None
    report_dir: Optional[str] = None
    filter_rules: FilterRules = FilterRules()

    @field_validator("kinds", mode="before")
    @classmethod
    def _parse_kinds(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_kinds(value)
        return value

    @field_validator("fail_on", mode="before")
    @classmethod
    def _parse_fail_on(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("upload_retries", "scan_timeout")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "Settings":
        """Build settings from environment variables; non-None overrides win."""
        env = os.environ if environ is None else environ
        scan_root = env.get("GITHUB_WORKSPACE") or os.getcwd()
        if overrides.get("scan_root"):
            scan_root = overrides["scan_root"]

        try:
            rules = FilterRules(
                excluded_file_patterns=_env_list(env.get("SCANRELAY_EXCLUDE_FILES")),
                excluded_path_substrings=_env_list(env.get("SCANRELAY_EXCLUDE_PATHS"))
                or list(DEFAULT_EXCLUDED_PATHS),
                placeholder_pattern=env.get("SCANRELAY_PLACEHOLDER_PATTERN") or DEFAULT_PLACEHOLDER_PATTERN,
            )
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid filter rules: {exc}") from exc

        data: dict = {
            "scan_root": str(Path(scan_root).resolve()),
            "repo_name": _repo_name(env.get("GITHUB_REPOSITORY", "")),
            "workspace_id": env.get("WORKSPACE_ID") or None,
            "project_id": env.get("PROJECT_ID") or None,
            "api_base_url": env.get("API_URL_BASE") or None,
            "credentials": ApiCredentials(
                api_key=env.get("X_API_KEY") or None,
                secret_key=env.get("X_SECRET_KEY") or None,
                tenant_key=env.get("X_TENANT_KEY") or None,
            ),
            "debug": _env_bool(env.get("DEBUG_MODE")),
            "display_name": env.get("DISPLAY_NAME") or "sbom",
            "kinds": env.get("SCAN_KINDS") or list(DEFAULT_KINDS),
            "scan_timeout": env.get("SCAN_TIMEOUT") or 600,
            "upload_timeout": env.get("UPLOAD_TIMEOUT") or 90.0,
            "upload_retries": env.get("UPLOAD_RETRIES") or 0,
            "upload_backoff": env.get("UPLOAD_BACKOFF") or 1.0,
            "parallel": _env_bool(env.get("SCAN_PARALLEL")),
            "fail_on": env.get("FAIL_ON_SEVERITY") or Severity.CRITICAL,
            "sbom_project_type": env.get("SBOM_PROJECT_TYPE") or None,
            "gitleaks_config": env.get("GITLEAKS_CONFIG") or None,
            "filter_rules": rules,
        }
        data.update({k: v for k, v in overrides.items() if v is not None})
        if "branch_name" not in data:
            data["branch_name"] = env.get("GITHUB_REF_NAME") or detect_branch(data["scan_root"])

        try:
            return cls(**data)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def parse_kinds(value: str) -> List[ToolKind]:
    kinds: List[ToolKind] = []
    for item in value.split(","):
        item = item.strip().lower()
        if not item:
            continue
        try:
            kind = ToolKind(item)
        except ValueError:
            valid = ", ".join(k.value for k in ToolKind)
            raise ConfigurationError(f"Unknown scan kind '{item}'. Valid kinds: {valid}")
        if kind not in kinds:
            kinds.append(kind)
    return kinds


def detect_branch(cwd: str) -> str:
    """Ask git for the current branch, falling back to ``main``."""
    try:
        result = run_cmd(["git", "rev-parse", "--abbrev-ref", "HEAD"], timeout=15, cwd=cwd)
    except ProcessError:
        return "main"
    branch = result.stdout.strip()
    if result.returncode != 0 or not branch or branch == "HEAD":
        return "main"
    return branch


def _repo_name(repository: str) -> str:
    parts = repository.split("/")
    return parts[1] if len(parts) > 1 and parts[1] else "repo"


def _env_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _env_list(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]
