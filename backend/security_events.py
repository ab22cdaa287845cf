import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

SEVERITIES = ('low', 'medium', 'high', 'critical')


class SecurityEventLogger:
    """Writes audit rows to ``security_events``.

    Logging a security event must never fail the request that triggered it:
    storage errors are reported to the application log and swallowed here.
    """

    def __init__(self, repository):
        self.repository = repository

    def log(self, event_type: str, severity: str, user_id: str = None,
            wallet_address: str = None, metadata: dict = None, ip_address: str = None) -> bool:
        if severity not in SEVERITIES:
            raise ValueError(f"Invalid severity level: {severity}")
        entry = {
            'event_type': event_type,
            'user_id': user_id,
            'wallet_address': wallet_address,
            'severity': severity,
            'metadata': {**(metadata or {}), 'ip_address': ip_address or 'unknown'},
            'created_at': datetime.now(timezone.utc).isoformat(),
        }
        if severity in ('high', 'critical'):
            logger.warning("SECURITY ALERT [%s]: %s user=%s wallet=%s", severity.upper(), event_type, user_id, wallet_address)
        try:
            self.repository.insert(entry)
            return True
        except Exception as e:
            logger.warning("Security event not stored (%s), logging instead: %s", e, entry)
            return False
