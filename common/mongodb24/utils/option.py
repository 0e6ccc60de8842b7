_TRUE_VALUES = ('true', 'yes', 'on', '1')
_FALSE_VALUES = ('false', 'no', 'off', '0')


class PropertyError(ValueError):
    def __init__(self, key, msg, suggestions=None, missing=False):
        if suggestions is None:
            suggestions = list()
        self.key = key
        self.message = msg
        self.suggestions = suggestions
        self.missing = missing

    def __str__(self):
        return '{} - {}'.format(self.key, self.message)


def str_to_bool(value):
    if isinstance(value, bool):
        return value
    _value = str(value).strip().lower()
    if _value in _TRUE_VALUES:
        return True
    if _value in _FALSE_VALUES:
        return False
    raise ValueError("'{}' is not a boolean, use one of {}".format(value, ', '.join(_TRUE_VALUES + _FALSE_VALUES)))


def positive(fn_type):
    def _convert(value):
        result = fn_type(value)
        if result <= 0:
            raise ValueError("'{}' must be greater than zero".format(value))
        return result

    # Argparse names the type in its error messages.
    _convert.__name__ = 'positive {}'.format(fn_type.__name__)
    return _convert


def _parse(key, fn_type=(lambda x: x), **kwargs):
    try:
        return fn_type(kwargs[key])
    except (ValueError, TypeError) as e:
        raise PropertyError(key, str(e))


def parse_option(key, fn_type=(lambda x: x), default_value=None, errors=None, required=True, **kwargs):
    """
    Parse a single option from the keyword arguments.
    Problems are appended to the errors list instead of being raised so that a caller can report them all at once.
    Empty strings count as missing.
    """
    errors = [] if errors is None else errors
    if kwargs.get(key) == '':
        kwargs.pop(key)
    try:
        return _parse(key, fn_type=fn_type, **kwargs)
    except KeyError:
        if default_value is None:
            if required:
                errors.append(PropertyError(key, "The key is missing and no default value has been set", missing=True))
            return None
    except PropertyError as pe:
        errors.append(pe)
        return None
    return fn_type(default_value)
