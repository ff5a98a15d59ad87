"""
Exception hierarchy for the taxonomy mapping and validation engine.

Three families with different handling:

- ConfigurationError: raised synchronously while registering categories,
  attributes, rules or pipelines. Never deferred to run time.
- TransformError: record-level and recoverable. Marks one record failed and the
  run continues.
- RunError: run lifecycle problems (single-flight violations, unknown runs,
  illegal state transitions).
"""

from typing import Any, Dict, Optional


def _with_context(message: str, **context: Any) -> str:
    parts = [f"{key}='{value}'" for key, value in context.items() if value is not None]
    if parts:
        return f"{message} ({', '.join(parts)})"
    return message


class TaxonomyHubError(Exception):
    """Base exception for all engine errors."""

    pass


# ---------------------------------------------------------------------------
# Configuration-time errors
# ---------------------------------------------------------------------------


class ConfigurationError(TaxonomyHubError):
    """Raised when registering taxonomy or rule configuration fails."""

    pass


class DuplicateCodeError(ConfigurationError):
    def __init__(self, code: str, scope: Optional[str] = None):
        self.code = code
        self.scope = scope
        super().__init__(_with_context("Duplicate code", code=code, scope=scope))


class ParentNotFoundError(ConfigurationError):
    def __init__(self, parent_code: str, reason: str = "does not exist"):
        self.parent_code = parent_code
        super().__init__(
            _with_context(f"Parent category {reason}", parent_code=parent_code)
        )


class CycleDetectedError(ConfigurationError):
    def __init__(self, code: str, parent_code: str):
        self.code = code
        self.parent_code = parent_code
        super().__init__(
            _with_context(
                "Re-parenting would create a cycle", code=code, parent_code=parent_code
            )
        )


class CategoryNotFoundError(ConfigurationError):
    def __init__(self, category_code: str, reason: str = "does not exist"):
        self.category_code = category_code
        super().__init__(
            _with_context(f"Category {reason}", category_code=category_code)
        )


class AttributeNotFoundError(ConfigurationError):
    def __init__(self, category_code: str, attribute_code: str):
        self.category_code = category_code
        self.attribute_code = attribute_code
        super().__init__(
            _with_context(
                "Attribute does not exist",
                category_code=category_code,
                attribute_code=attribute_code,
            )
        )


class TypeMismatchConfigError(ConfigurationError):
    """A rule produces values the target attribute cannot hold."""

    pass


class RuleConflictError(ConfigurationError):
    def __init__(self, message: str, existing_rule_id: Optional[str] = None):
        self.existing_rule_id = existing_rule_id
        super().__init__(_with_context(message, existing_rule_id=existing_rule_id))


class PipelineNotFoundError(ConfigurationError):
    def __init__(self, pipeline_id: str):
        self.pipeline_id = pipeline_id
        super().__init__(_with_context("Pipeline does not exist", pipeline_id=pipeline_id))


class InvalidRulePayloadError(ConfigurationError):
    """
    Raised when a discriminated rule payload cannot be accepted.

    Covers unknown ``type`` discriminators as well as bodies that do not match
    the schema registered for their discriminator.
    """

    def __init__(self, message: str, payload: Optional[Dict[str, Any]] = None):
        self.payload = payload
        super().__init__(message)


# ---------------------------------------------------------------------------
# Record-level transformation errors
# ---------------------------------------------------------------------------


class TransformError(TaxonomyHubError):
    """Base class for recoverable, record-level transformation failures."""

    error_type = "TransformError"

    def __init__(self, message: str, value: Any = None):
        self.value = value
        super().__init__(message)


class UnmappedRangeError(TransformError):
    error_type = "UnmappedRange"


class UnknownKeyError(TransformError):
    error_type = "UnknownKey"


class ValidationFailedError(TransformError):
    error_type = "ValidationFailed"


class TypeMismatchError(TransformError):
    error_type = "TypeMismatch"


# ---------------------------------------------------------------------------
# Run lifecycle errors
# ---------------------------------------------------------------------------


class RunError(TaxonomyHubError):
    pass


class AlreadyRunningError(RunError):
    def __init__(self, pipeline_id: str, run_id: str):
        self.pipeline_id = pipeline_id
        self.run_id = run_id
        super().__init__(
            _with_context(
                "Pipeline already has an active run",
                pipeline_id=pipeline_id,
                run_id=run_id,
            )
        )


class PipelineInactiveError(RunError):
    def __init__(self, pipeline_id: str):
        self.pipeline_id = pipeline_id
        super().__init__(_with_context("Pipeline is inactive", pipeline_id=pipeline_id))


class RunNotFoundError(RunError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(_with_context("Run does not exist", run_id=run_id))


class InvalidTransitionError(RunError):
    def __init__(self, run_id: str, current: str, target: str):
        self.run_id = run_id
        self.current = current
        self.target = target
        super().__init__(
            _with_context(
                f"Illegal run status transition {current} -> {target}", run_id=run_id
            )
        )


class ErrorEntryNotFoundError(TaxonomyHubError):
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(_with_context("Error entry does not exist", entry_id=entry_id))
