"""
mailtasks package

Turns recent email into reviewable tasks and delivers daily briefings.
"""

__all__ = [
    "config",
    "logging_config",
    "errors",
    "models",
    "storage",
    "credentials",
    "mailbox",
    "gmail_client",
    "outlook_client",
    "llm_client",
    "prompts",
    "sanitize",
    "extractor",
    "scan_engine",
    "briefing_preprocessor",
    "briefing_generator",
    "daily_runner",
    "settings_service",
    "scheduler",
]
