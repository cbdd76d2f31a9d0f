import datetime
import uuid

from rest_framework.exceptions import ValidationError

TRUTHY_VALUES = {"1", "true", "t", "yes", "y", "on"}


def parse_uuid_param(params, name):
    value = params.get(name)
    if value in (None, ""):
        return None
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError({name: "Must be a valid UUID."})


def parse_date_param(params, name):
    value = params.get(name)
    if value in (None, ""):
        return None
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError({name: "Date must be in YYYY-MM-DD format."})


def parse_bool_param(params, name, default=False):
    value = params.get(name)
    if value is None:
        return default
    return str(value).strip().lower() in TRUTHY_VALUES
