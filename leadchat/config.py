"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("leadchat.config")


class Settings(BaseSettings):
    # LLM
    anthropic_api_key: str = ""
    llm_model: str = "claude-3-5-sonnet-20241022"
    llm_max_tokens: int = 1000

    # ElevenLabs outbound calls
    elevenlabs_api_key: str = ""
    elevenlabs_agent_id: str = ""
    elevenlabs_url: str = "https://api.elevenlabs.io/v1/convai/conversation"

    # Lead store: "memory" or "supabase"
    lead_store_backend: str = "memory"
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_table: str = "leads"

    # Chat session
    max_messages: int = 40
    call_prompt_threshold: int = 30
    lead_form_min_messages: int = 15
    reply_pacing: bool = False

    # Idle session eviction (seconds)
    session_idle_timeout: int = 1800
    finished_session_idle_timeout: int = 300
    max_active_sessions: int = 1000

    # Extraction (0 = read the whole transcript)
    extraction_window: int = 0
    extract_assistant_messages: bool = False
    area_cities: list[str] = []
    area_neighborhoods: list[str] = []

    # Listings
    listings_path: str = ""

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"sk-ant-...", "your-elevenlabs-key", "your-supabase-key"}

        # LLM key: required
        if not self.anthropic_api_key or self.anthropic_api_key in _placeholders:
            raise ValueError(
                "ANTHROPIC_API_KEY is missing or still a placeholder. "
                "Set it in .env so Roy can reply."
            )

        if self.lead_store_backend not in ("memory", "supabase"):
            raise ValueError(
                f"LEAD_STORE_BACKEND must be 'memory' or 'supabase', "
                f"got {self.lead_store_backend!r}"
            )
        if self.lead_store_backend == "supabase" and not (self.supabase_url and self.supabase_key):
            raise ValueError(
                "LEAD_STORE_BACKEND=supabase needs SUPABASE_URL and SUPABASE_KEY."
            )

        if not 0 < self.call_prompt_threshold <= self.max_messages:
            raise ValueError(
                "CALL_PROMPT_THRESHOLD must be positive and not above MAX_MESSAGES."
            )

        if self.max_active_sessions < 1 or self.session_idle_timeout <= 0:
            raise ValueError(
                "MAX_ACTIVE_SESSIONS and SESSION_IDLE_TIMEOUT must be positive."
            )

        if self.lead_store_backend == "memory":
            warnings.append(
                "LEAD_STORE_BACKEND=memory. Leads are lost when the process exits."
            )

        # Admin API key: warn if unset
        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        # ElevenLabs: warn if missing or placeholder
        if (
            not self.elevenlabs_api_key
            or self.elevenlabs_api_key in _placeholders
            or not self.elevenlabs_agent_id
        ):
            warnings.append(
                "ELEVENLABS_API_KEY / ELEVENLABS_AGENT_ID not set. Call requests will fail."
            )

        return warnings


settings = Settings()
