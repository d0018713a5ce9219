from dashboard_agent.parameters.validators import (
    ParamSpec,
    ParamType,
    ValidationReport,
    parse_date,
    validate_params,
    validate_value
)

__all__ = [
    'ParamSpec',
    'ParamType',
    'ValidationReport',
    'parse_date',
    'validate_params',
    'validate_value'
]
