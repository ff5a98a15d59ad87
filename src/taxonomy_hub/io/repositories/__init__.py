from taxonomy_hub.io.repositories.error_log_repository import ErrorLogRepository

__all__ = ["ErrorLogRepository"]
