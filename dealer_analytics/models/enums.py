"""
Enumeration definitions for the dealership analytics report service.

All enums inherit from both `str` and `Enum` so they serialize directly in
Pydantic models and JSON envelopes.

Groups:
- ErrorKind: classified failure kinds surfaced in error envelopes
- AccumulatorOp: raw aggregates computed by the group stage
- DerivationOp: formulas supported by the metric derivation engine
- ScaleKind / Comparator: composite scoring normalization and rule comparisons
- EntityType: the record collections reports read from
- Domain status values shared by several reports (quotes, supplier responses,
  workflows, environments)
"""

from enum import Enum


class ErrorKind(str, Enum):
    """
    Classified error kinds returned in `error.kind` of a failure envelope.

    - ValidationError: bad filter input, HTTP 400
    - ConfigurationError: report wiring bug, HTTP 500
    - DatabaseError: data store failure or timeout, HTTP 500
    """
    VALIDATION = "ValidationError"
    CONFIGURATION = "ConfigurationError"
    DATABASE = "DatabaseError"


class AccumulatorOp(str, Enum):
    """
    Raw aggregate operations computed per group.

    Null handling:
    - SUM ignores non-numeric values; an empty group sums to 0
    - AVG / MIN / MAX ignore None; an empty input yields None
    - COUNT counts records (optionally those matching a predicate)
    - ADD_TO_SET collects distinct non-null values in appearance order
    - FIRST keeps the first non-null value
    """
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    COUNT = "count"
    ADD_TO_SET = "addToSet"
    FIRST = "first"


class DerivationOp(str, Enum):
    """Formulas supported by derived metrics."""
    PERCENTAGE = "percentage"  # numerator / denominator * 100
    RATIO = "ratio"            # numerator / denominator
    DIFFERENCE = "difference"  # numerator - denominator
    SUM = "sum"                # numerator + denominator


class ScaleKind(str, Enum):
    """
    Normalization scale for a composite score input.

    - PERCENT: value already expressed on 0..100
    - BOOLEAN: truthy -> 100, falsy -> 0
    - RANGE: linear map of [minimum, maximum] onto 0..100
    """
    PERCENT = "percent"
    BOOLEAN = "boolean"
    RANGE = "range"


class Comparator(str, Enum):
    """Comparison operators for threshold rule tables."""
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    EQ = "eq"


class EntityType(str, Enum):
    """
    Record collections read by reports.

    The value doubles as the backing table name; table names are only ever
    taken from this enum, never from request input.
    """
    VEHICLE = "vehicles"
    WORKSHOP_QUOTE = "workshop_quotes"
    DEALERSHIP = "dealerships"
    SERVICE_BAY = "service_bays"
    USER = "users"
    GROUP_PERMISSION = "group_permissions"
    INTEGRATION = "integrations"
    WORKFLOW = "workflows"
    WORKFLOW_EXECUTION = "workflow_executions"
    COST_CONFIGURATION = "cost_configurations"
    CURRENCY = "currencies"
    WORKSHOP_REPORT = "workshop_reports"
    SUPPLIER = "suppliers"


class QuoteType(str, Enum):
    """Workshop quote types."""
    SUPPLIER = "supplier"
    BAY = "bay"
    MANUAL = "manual"


class QuoteStatus(str, Enum):
    """Workshop quote lifecycle statuses."""
    QUOTE_REQUEST = "quote_request"
    QUOTE_SENT = "quote_sent"
    QUOTE_APPROVED = "quote_approved"
    BOOKING_REQUEST = "booking_request"
    BOOKING_REJECTED = "booking_rejected"
    WORK_IN_PROGRESS = "work_in_progress"
    WORK_REVIEW = "work_review"
    COMPLETED_JOBS = "completed_jobs"
    REJECTED = "rejected"


class SupplierResponseStatus(str, Enum):
    """Supplier answers recorded on a supplier quote."""
    APPROVED = "approved"
    REJECTED = "rejected"
    NOT_INTERESTED = "not_interested"


class ExecutionStatus(str, Enum):
    """Workflow execution outcome."""
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"


class WorkflowType(str, Enum):
    """Workflow types known to the workflow engines."""
    VEHICLE_INBOUND = "vehicle_inbound"
    VEHICLE_PROPERTY_TRIGGER = "vehicle_property_trigger"
    EMAIL_AUTOMATION = "email_automation"


class WorkflowStatus(str, Enum):
    """Workflow definition status."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class IntegrationEnvironment(str, Enum):
    """Integration environments, in display order."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"
