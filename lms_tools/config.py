"""Environment driven settings for the Supabase and Google Drive clients.

Values are read from the process environment. A ``.env`` file (by default
next to the current working directory) is loaded first without overriding
variables that are already set, so CI secrets always win over local files.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv


DEFAULT_ENV_PATH = Path.cwd() / ".env"
DEFAULT_TIMEOUT = 30.0


class ConfigurationError(RuntimeError):
    """Raised when mandatory environment variables are missing."""


@dataclass
class CompanyFolders:
    name: str
    root: str
    courses: str
    projects: str = ""

    @classmethod
    def from_mapping(cls, slug: str, data: Mapping[str, str]) -> "CompanyFolders":
        return cls(
            name=str(data.get("name") or slug),
            root=str(data.get("root") or ""),
            courses=str(data.get("courses") or ""),
            projects=str(data.get("projects") or ""),
        )


@dataclass
class Settings:
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    google_service_account_file: Optional[str] = None
    google_client_email: Optional[str] = None
    google_private_key: Optional[str] = None
    google_private_key_id: Optional[str] = None
    google_project_id: Optional[str] = None
    shared_drive_id: Optional[str] = None
    company_folders: Dict[str, CompanyFolders] = field(default_factory=dict)
    default_company: str = "login"
    request_timeout: float = DEFAULT_TIMEOUT

    def require_supabase(self) -> None:
        missing: List[str] = []
        if not self.supabase_url:
            missing.append("SUPABASE_URL")
        if not self.supabase_key:
            missing.append("SUPABASE_SERVICE_ROLE_KEY")
        if missing:
            raise ConfigurationError(f"Missing Supabase settings: {', '.join(missing)}")

    def require_google(self) -> None:
        if self.google_service_account_file:
            return
        missing: List[str] = []
        if not self.google_client_email:
            missing.append("GOOGLE_CLIENT_EMAIL")
        if not self.google_private_key:
            missing.append("GOOGLE_PRIVATE_KEY")
        if missing:
            raise ConfigurationError(
                "Missing Google service account settings: "
                f"{', '.join(missing)} (or set GOOGLE_SERVICE_ACCOUNT_PATH)"
            )

    def folders_for(self, company: Optional[str]) -> CompanyFolders:
        slug = (company or self.default_company).lower()
        folders = self.company_folders.get(slug) or self.company_folders.get(self.default_company)
        if folders is None:
            raise ConfigurationError(
                f"No Drive folders configured for company '{slug}' "
                "(set LMS_COMPANY_FOLDERS or LMS_COMPANY_FOLDERS_FILE)"
            )
        return folders


def _parse_timeout(raw: Optional[str]) -> float:
    try:
        return float(raw) if raw else DEFAULT_TIMEOUT
    except ValueError:
        return DEFAULT_TIMEOUT


def _unescape_private_key(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    return raw.replace("\\n", "\n")


def parse_company_folders(raw: Optional[str]) -> Dict[str, CompanyFolders]:
    if not raw or not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Company folder configuration is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError("Company folder configuration must be a JSON object")
    return {
        str(slug).lower(): CompanyFolders.from_mapping(str(slug), entry or {})
        for slug, entry in data.items()
    }


def load_settings(
    env_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    if environ is None:
        load_dotenv(dotenv_path=env_path or DEFAULT_ENV_PATH, override=False)
        environ = os.environ

    folders_raw = environ.get("LMS_COMPANY_FOLDERS")
    folders_file = environ.get("LMS_COMPANY_FOLDERS_FILE")
    if not folders_raw and folders_file:
        path = Path(folders_file)
        if not path.exists():
            raise ConfigurationError(f"{path} does not exist.")
        folders_raw = path.read_text(encoding="utf-8")

    return Settings(
        supabase_url=environ.get("SUPABASE_URL"),
        supabase_key=environ.get("SUPABASE_SERVICE_ROLE_KEY") or environ.get("SUPABASE_ANON_KEY"),
        google_service_account_file=environ.get("GOOGLE_SERVICE_ACCOUNT_PATH"),
        google_client_email=environ.get("GOOGLE_CLIENT_EMAIL"),
        google_private_key=_unescape_private_key(environ.get("GOOGLE_PRIVATE_KEY")),
        google_private_key_id=environ.get("GOOGLE_PRIVATE_KEY_ID"),
        google_project_id=environ.get("GOOGLE_PROJECT_ID"),
        shared_drive_id=environ.get("GOOGLE_DRIVE_FOLDER_ID") or None,
        company_folders=parse_company_folders(folders_raw),
        default_company=(environ.get("LMS_DEFAULT_COMPANY") or "login").lower(),
        request_timeout=_parse_timeout(environ.get("LMS_REQUEST_TIMEOUT")),
    )
