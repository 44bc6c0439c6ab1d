def mask_email(email: str | None) -> str:
    """Reduce an email to something safe for log lines: ``d***@example.org``."""
    if not email or "@" not in email:
        return "***"
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}"
