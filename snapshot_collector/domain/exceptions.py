class CollectorException(Exception):
    """Base exception for all snapshot-collector errors."""
    pass

class ConfigurationException(CollectorException):
    """Raised when required settings (credentials, database URL) are missing or invalid."""
    def __init__(self, key: str, message: str = "is not set in the environment."):
        self.key = key
        super().__init__(f"{key} {message}")

class DatabaseException(CollectorException):
    """Raised when a database operation fails."""
    pass
