"""
config.py
---------
HealthDoc Builder — ABDM Health Document Records — Runtime Configuration
------------------------------------------------------------------------
Settings are read from the process environment, with a ``.env`` file in the
repository root loaded first (existing environment variables win).

Variables:
    PATIENT_API_URL             Remote patient list endpoint (optional).
    PATIENT_API_TOKEN           Bearer credential for the patient API (optional).
    PATIENTS_FILE               Static patients document; default mock_data/patients.json.
    PRACTITIONER_SOURCE         "injected" (default) or "roster".
    INJECTED_PRACTITIONER       Injected practitioner as a JSON string.
    INJECTED_PRACTITIONER_FILE  Path to a JSON file holding the injected practitioner.
    SUBMISSION_URL              Endpoint that receives {"bundle", "patient"}.
    SUBMISSION_TIMEOUT          Seconds; default 30.
    NARRATIVE_ENABLED           "true" / "false"; default true.
    MAX_SESSIONS                Build sessions kept in memory; default 100.
    LOG_LEVEL                   Root log level; default INFO.

Project: HealthDoc Builder
"""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

_REPO_ROOT = os.path.dirname(os.path.abspath(__file__))

load_dotenv(os.path.join(_REPO_ROOT, ".env"), override=False)

DEFAULT_PATIENTS_FILE = os.path.join(_REPO_ROOT, "mock_data", "patients.json")
DEFAULT_SUBMISSION_URL = "https://uat.discharge.org.in/api/v5/fhir-bundle"


class Settings(BaseModel):
    patient_api_url:            Optional[str] = None
    patient_api_token:          Optional[str] = None
    patients_file:              Optional[str] = DEFAULT_PATIENTS_FILE
    practitioner_source:        str = "injected"
    injected_practitioner:      Optional[str] = None
    injected_practitioner_file: Optional[str] = None
    submission_url:             str = DEFAULT_SUBMISSION_URL
    submission_timeout:         float = 30.0
    narrative_enabled:          bool = True
    max_sessions:               int = 100
    log_level:                  str = "INFO"

    @field_validator("practitioner_source", mode="after")
    @classmethod
    def check_source(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("injected", "roster"):
            raise ValueError("PRACTITIONER_SOURCE must be 'injected' or 'roster'.")
        return v

    @field_validator("max_sessions", mode="after")
    @classmethod
    def check_max_sessions(cls, v: int) -> int:
        if v < 1:
            raise ValueError("MAX_SESSIONS must be at least 1.")
        return v


def _env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else None


def get_settings() -> Settings:
    """Build ``Settings`` from the current environment (re-read on every call)."""
    values = {
        "patient_api_url":            _env("PATIENT_API_URL"),
        "patient_api_token":          _env("PATIENT_API_TOKEN"),
        "patients_file":              _env("PATIENTS_FILE"),
        "practitioner_source":        _env("PRACTITIONER_SOURCE"),
        "injected_practitioner":      _env("INJECTED_PRACTITIONER"),
        "injected_practitioner_file": _env("INJECTED_PRACTITIONER_FILE"),
        "submission_url":             _env("SUBMISSION_URL"),
        "submission_timeout":         _env("SUBMISSION_TIMEOUT"),
        "narrative_enabled":          _env("NARRATIVE_ENABLED"),
        "max_sessions":               _env("MAX_SESSIONS"),
        "log_level":                  _env("LOG_LEVEL"),
    }
    return Settings(**{k: v for k, v in values.items() if v is not None})
