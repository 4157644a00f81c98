"""
test_config.py
--------------
HealthDoc Builder — ABDM Health Document Records — Test Suite for config.py
----------------------------------------------------------------------------
Tests environment-driven settings with ``monkeypatch``.

Run:
    pytest tests/test_config.py -v --tb=short

Project: HealthDoc Builder
"""

import os
import sys

import pytest
from pydantic import ValidationError

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import DEFAULT_PATIENTS_FILE, DEFAULT_SUBMISSION_URL, Settings, get_settings

_VARS = (
    "PATIENT_API_URL", "PATIENT_API_TOKEN", "PATIENTS_FILE", "PRACTITIONER_SOURCE",
    "INJECTED_PRACTITIONER", "INJECTED_PRACTITIONER_FILE", "SUBMISSION_URL",
    "SUBMISSION_TIMEOUT", "NARRATIVE_ENABLED", "LOG_LEVEL", "MAX_SESSIONS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    """With no variables set every setting has its default."""
    s = get_settings()
    assert s.patient_api_url is None
    assert s.patients_file == DEFAULT_PATIENTS_FILE
    assert s.practitioner_source == "injected"
    assert s.submission_url == DEFAULT_SUBMISSION_URL
    assert s.submission_timeout == 30.0
    assert s.narrative_enabled is True
    assert s.log_level == "INFO"


def test_environment_overrides(clean_env):
    """Environment variables override defaults and are re-read each call."""
    clean_env.setenv("PATIENT_API_URL", "https://p.test/patients")
    clean_env.setenv("PRACTITIONER_SOURCE", " Roster ")
    clean_env.setenv("NARRATIVE_ENABLED", "false")
    clean_env.setenv("SUBMISSION_TIMEOUT", "12.5")
    s = get_settings()
    assert s.patient_api_url == "https://p.test/patients"
    assert s.practitioner_source == "roster"
    assert s.narrative_enabled is False
    assert s.submission_timeout == 12.5


def test_blank_variables_are_ignored(clean_env):
    """Blank values fall back to defaults."""
    clean_env.setenv("SUBMISSION_URL", "   ")
    assert get_settings().submission_url == DEFAULT_SUBMISSION_URL


def test_invalid_practitioner_source():
    """Only 'injected' and 'roster' are accepted."""
    with pytest.raises(ValidationError):
        Settings(practitioner_source="ldap")


def test_max_sessions_setting(clean_env):
    """MAX_SESSIONS defaults to 100, is read from the environment and must be positive."""
    assert get_settings().max_sessions == 100
    clean_env.setenv("MAX_SESSIONS", "5")
    assert get_settings().max_sessions == 5
    with pytest.raises(ValidationError):
        Settings(max_sessions=0)
