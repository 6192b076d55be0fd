from typing import Any, Dict, Optional, Union


def format_log_message(message: str, extra: Optional[Dict[str, Any]] = None) -> str:
    """
    Appends ``key=value`` pairs to a log message.

    Args:
        message (str): Main message
        extra (Optional[Dict[str, Any]]): Extra fields

    Returns:
        str: Formatted message
    """
    if extra:
        return f"{message} | {' | '.join([f'{k}={v}' for k, v in extra.items()])}"
    return message


def safe_get(data: Dict[str, Any], keys: Union[str, list], default: Any = None) -> Any:
    """
    Safely reads a value from nested mappings.

    Args:
        data (Dict[str, Any]): Source mapping
        keys (Union[str, list]): Key or path of keys into nested mappings
        default (Any): Value returned when the path does not exist

    Returns:
        Any: Extracted value or the default
    """
    if not isinstance(data, dict):
        return default

    if isinstance(keys, str):
        return data.get(keys, default)

    current = data
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]

    return current


def first_present(*values: Any) -> Any:
    """Returns the first value that is neither None nor a blank string."""
    for value in values:
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None
