"""
Application configuration module using Pydantic BaseSettings v2.

This module provides centralized configuration management for the invoice
bot, loading settings from environment variables and .env files.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via environment variables or a .env file.
    Environment variable names are case-insensitive.
    """

    # WhatsApp Cloud API (Meta Graph API)
    whatsapp_access_token: str = ""
    whatsapp_verify_token: str = ""  # Webhook GET handshake token
    whatsapp_app_secret: str = ""  # HMAC secret for x-hub-signature-256
    whatsapp_api_version: str = "v18.0"
    whatsapp_api_base_url: str = "https://graph.facebook.com"

    # Messenger Send API
    messenger_page_id: str = ""  # Empty means "me"
    messenger_access_token: str = ""

    # Database Configuration
    database_url: str = "sqlite+aiosqlite:///./invoicebot.db"

    # Conversation limits
    rate_limit_wa_messages_per_min: int = 10
    default_due_days: int = 14

    # Document storage ("local" or "supabase")
    document_storage_backend: str = "local"
    pdf_storage_path: str = "/tmp/invoicebot-pdfs"
    supabase_url: str = ""
    supabase_secret_key: str = ""
    supabase_bucket: str = "invoices"

    # Application Configuration
    app_name: str = "InvoiceBot"
    debug: bool = False
    environment: str = "development"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Create singleton settings instance
settings = Settings()
