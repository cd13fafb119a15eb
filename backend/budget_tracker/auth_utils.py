import secrets


def token_from_header(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip() or None
    return None


def verify_cron_secret(authorization: str | None, expected: str | None) -> bool:
    """An unset secret leaves the trigger open."""
    if not expected:
        return True
    token = token_from_header(authorization)
    if token is None:
        return False
    return secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))
