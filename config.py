# config.py
#
# Settings lookup:
# - Streamlit secrets first ([section].key in .streamlit/secrets.toml or Streamlit Cloud Secrets)
# - Environment variables second
#
#   [supabase]
#   url = "https://<PROJECT_REF>.supabase.co"
#   service_role_key = "<SERVICE_ROLE_KEY>"
#
#   [ledger]
#   log_level = "INFO"

import logging
import os
from typing import Any, Optional

import streamlit as st

LOGGER_NAME = "ledger"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def _from_secrets(section: str, key: str) -> Optional[Any]:
    # st.secrets raises when no secrets file exists; treat that as "not set"
    try:
        return st.secrets[section][key]
    except Exception:
        return None


def get_setting(section: str, key: str, env: Optional[str] = None, default: Any = None) -> Any:
    v = _from_secrets(section, key)
    if v not in (None, ""):
        return v
    if env:
        v = (os.getenv(env) or "").strip()
        if v:
            return v
    return default


def supabase_url() -> str:
    v = get_setting("supabase", "url", env="SUPABASE_URL")
    if not v:
        raise RuntimeError(
            "Missing secrets: set [supabase].url in .streamlit/secrets.toml, Streamlit Cloud Secrets or SUPABASE_URL"
        )
    return str(v)


def supabase_service_role_key() -> str:
    v = get_setting("supabase", "service_role_key", env="SUPABASE_SERVICE_ROLE_KEY")
    if not v:
        raise RuntimeError(
            "Missing secrets: set [supabase].service_role_key in .streamlit/secrets.toml, "
            "Streamlit Cloud Secrets or SUPABASE_SERVICE_ROLE_KEY"
        )
    return str(v)


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Attach a stream handler to the "ledger" logger once.
    Module loggers are children of it (ledger.settlement, ledger.db, ...).
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    level_name = str(level or get_setting("ledger", "log_level", env="LEDGER_LOG_LEVEL", default="INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    return logger
