"""
Environment configuration for the FleetDesk server.

Values are read lazily from environment variables so tests can monkeypatch
the environment before the first access.
"""
import os
from typing import Optional


class Config:
    """Application configuration read from the environment"""

    def __init__(self):
        self._is_production: Optional[bool] = None

    @property
    def is_production(self) -> bool:
        """Check if running in a production deployment"""
        if self._is_production is None:
            self._is_production = os.getenv("DEPLOYMENT_ENV", "development").lower() == "production"
        return self._is_production

    @staticmethod
    def _get_number(name: str, default: float) -> float:
        raw = os.getenv(name)
        if raw is None or raw.strip() == "":
            return default
        return float(raw)

    @property
    def online_timeout_seconds(self) -> float:
        """Seconds since last poll after which a client counts as offline"""
        return self._get_number("ONLINE_TIMEOUT_SECONDS", 30)

    @property
    def status_sweep_interval_seconds(self) -> float:
        return self._get_number("STATUS_SWEEP_INTERVAL_SECONDS", 15)

    @property
    def eviction_threshold_seconds(self) -> float:
        """Idle time after which a client record is dropped (default one day)"""
        return self._get_number("EVICTION_THRESHOLD_SECONDS", 24 * 60 * 60)

    @property
    def eviction_interval_seconds(self) -> float:
        return self._get_number("EVICTION_INTERVAL_SECONDS", 60 * 60)

    @property
    def message_history_limit(self) -> int:
        return int(self._get_number("MESSAGE_HISTORY_LIMIT", 100))

    def get_admin_key(self) -> Optional[str]:
        """Get the admin API key from environment"""
        return os.getenv("ADMIN_KEY") or None

    def get_database_url(self) -> str:
        """Get the database URL from environment"""
        return os.getenv("DATABASE_URL", "sqlite:///./data.db")

    def validate(self) -> tuple[bool, list[str], list[str]]:
        """
        Validate the configuration.

        Returns:
            tuple: (is_valid, list_of_errors, list_of_warnings)
        """
        errors = []
        warnings = []

        numeric = {
            "ONLINE_TIMEOUT_SECONDS": lambda: self.online_timeout_seconds,
            "STATUS_SWEEP_INTERVAL_SECONDS": lambda: self.status_sweep_interval_seconds,
            "EVICTION_THRESHOLD_SECONDS": lambda: self.eviction_threshold_seconds,
            "EVICTION_INTERVAL_SECONDS": lambda: self.eviction_interval_seconds,
            "MESSAGE_HISTORY_LIMIT": lambda: self.message_history_limit,
        }
        values = {}
        for name, getter in numeric.items():
            try:
                value = getter()
            except ValueError:
                errors.append(f"{name} must be a number, got {os.getenv(name)!r}")
                continue
            if value <= 0:
                errors.append(f"{name} must be positive, got {value}")
            values[name] = value

        if "ONLINE_TIMEOUT_SECONDS" in values and "EVICTION_THRESHOLD_SECONDS" in values:
            if values["EVICTION_THRESHOLD_SECONDS"] <= values["ONLINE_TIMEOUT_SECONDS"]:
                warnings.append("EVICTION_THRESHOLD_SECONDS should be much longer than ONLINE_TIMEOUT_SECONDS")

        admin_key = self.get_admin_key()
        if not admin_key:
            warnings.append("ADMIN_KEY environment variable not set - admin endpoints are unauthenticated")
        elif len(admin_key) < 16:
            warnings.append("ADMIN_KEY should be at least 16 characters for security")
        elif admin_key in ("admin", "changeme"):
            warnings.append("ADMIN_KEY using default/insecure value - change for production")

        db_url = self.get_database_url()
        if "sqlite" in db_url.lower() and self.is_production:
            warnings.append("Using SQLite database - PostgreSQL recommended for production")

        return (len(errors) == 0, errors, warnings)

    def print_config_summary(self):
        """Print configuration summary for debugging"""
        is_valid, errors, warnings = self.validate()

        print("\n" + "=" * 60)
        print("FleetDesk Configuration")
        print("=" * 60)
        print(f"Environment: {'Production' if self.is_production else 'Development'}")
        print(f"Admin Key: {'✓ Set' if self.get_admin_key() else '✗ Missing'}")
        print(f"Database: {self.get_database_url()}")
        if is_valid:
            print(f"Online timeout: {self.online_timeout_seconds}s")
            print(f"Eviction threshold: {self.eviction_threshold_seconds}s")
            print("Status: ✓ Configuration valid")
        else:
            print("Status: ✗ Configuration issues detected:")
            for error in errors:
                print(f"  - {error}")
        for warning in warnings:
            print(f"  ! {warning}")
        print("=" * 60 + "\n")


# Global config instance
config = Config()
