import collections
import logging
import os
import re
import tempfile

from mongodb24.utils.option import parse_option, str_to_bool, positive

logger = logging.getLogger(__name__)

MONGODB_PORT = 27017
DEFAULT_CONFIG_PATH = '/var/lib/mongodb/mongodb.conf'
DEFAULT_DATA_DIR = '/var/lib/mongodb/data'
DEFAULT_PID_FILE = '/var/lib/mongodb/mongodb.pid'

ENV_USER = 'MONGODB_USER'
ENV_PASSWORD = 'MONGODB_PASSWORD'
ENV_DATABASE = 'MONGODB_DATABASE'
ENV_ADMIN_PASSWORD = 'MONGODB_ADMIN_PASSWORD'
ENV_NOPREALLOC = 'MONGODB_NOPREALLOC'
ENV_SMALLFILES = 'MONGODB_SMALLFILES'
ENV_QUIET = 'MONGODB_QUIET'

ENV_START_ATTEMPTS = 'MONGODB_START_ATTEMPTS'
ENV_START_INTERVAL = 'MONGODB_START_INTERVAL'
ENV_STOP_TIMEOUT = 'MONGODB_STOP_TIMEOUT'

# Variables holding credentials, these must not reach the engine process.
CREDENTIAL_VARIABLES = (ENV_USER, ENV_PASSWORD, ENV_DATABASE, ENV_ADMIN_PASSWORD)

# The engine flags in the order they are rendered.
FLAG_SETTINGS = collections.OrderedDict([
    ('noprealloc', ENV_NOPREALLOC),
    ('smallfiles', ENV_SMALLFILES),
    ('quiet', ENV_QUIET)
])

USAGE = '''You must specify the following environment variables:
  {user}
  {password}
  {database}
Optionally you can provide settings for the admin user and the engine:
  {admin_password}
  {noprealloc} (true|false)
  {smallfiles} (true|false)
  {quiet} (true|false)
'''.format(user=ENV_USER, password=ENV_PASSWORD, database=ENV_DATABASE, admin_password=ENV_ADMIN_PASSWORD,
           noprealloc=ENV_NOPREALLOC, smallfiles=ENV_SMALLFILES, quiet=ENV_QUIET)

_USER_PATTERN = re.compile(r'^[a-zA-Z0-9_]+$')
_DATABASE_INVALID_CHARACTERS = '/\\. "$'
_DATABASE_MAX_LENGTH = 63


class MongoBootstrapError(Exception):
    pass


class ConfigurationError(MongoBootstrapError):
    def __init__(self, errors, msg=None):
        self.errors = list(errors)
        _details = '; '.join(str(e) for e in self.errors)
        super(ConfigurationError, self).__init__(_details if msg is None else msg)


def _user_name(value):
    if not _USER_PATTERN.match(value):
        raise ValueError("'{}' may only contain letters, digits and underscores".format(value))
    return value


def _database_name(value):
    if len(value) > _DATABASE_MAX_LENGTH:
        raise ValueError("the name is longer than {} characters".format(_DATABASE_MAX_LENGTH))
    _invalid = [c for c in _DATABASE_INVALID_CHARACTERS if c in value]
    if _invalid:
        raise ValueError("'{}' contains invalid characters {}".format(value, ''.join(_invalid)))
    return value


class EnvironmentConfiguration(collections.namedtuple('EnvironmentConfiguration', [
    'user', 'password', 'database', 'admin_password', 'noprealloc', 'smallfiles', 'quiet'])):
    """
    The recognized environment variables, read once at container start.
    The flags are True, False or None when the variable is not set.
    """
    __slots__ = ()

    @classmethod
    def from_environ(cls, environ):
        errors = []
        user = parse_option(ENV_USER, _user_name, errors=errors, **environ)
        password = parse_option(ENV_PASSWORD, errors=errors, **environ)
        database = parse_option(ENV_DATABASE, _database_name, errors=errors, **environ)
        admin_password = parse_option(ENV_ADMIN_PASSWORD, required=False, errors=errors, **environ)
        flags = dict((setting, parse_option(variable, str_to_bool, required=False, errors=errors, **environ))
                     for setting, variable in FLAG_SETTINGS.items())
        if errors:
            raise ConfigurationError(errors)
        return cls(user=user, password=password, database=database, admin_password=admin_password, **flags)

    def is_admin_requested(self):
        return self.admin_password is not None

    def __repr__(self):
        return 'EnvironmentConfiguration(user={}, database={}, admin={}, noprealloc={}, smallfiles={}, quiet={})'.format(
            self.user, self.database, self.is_admin_requested(), self.noprealloc, self.smallfiles, self.quiet
        )

    __str__ = __repr__


class StartupOptions(collections.namedtuple('StartupOptions', ['attempts', 'interval', 'stop_timeout'])):
    """
    The readiness polling budget and the time allowed for the temporary engine to stop.
    """
    __slots__ = ()

    @classmethod
    def from_environ(cls, environ):
        errors = []
        attempts = parse_option(ENV_START_ATTEMPTS, positive(int), default_value=60, errors=errors, **environ)
        interval = parse_option(ENV_START_INTERVAL, positive(float), default_value=1., errors=errors, **environ)
        stop_timeout = parse_option(ENV_STOP_TIMEOUT, positive(float), default_value=60., errors=errors, **environ)
        if errors:
            raise ConfigurationError(errors)
        return cls(attempts=attempts, interval=interval, stop_timeout=stop_timeout)

    def replace(self, **kwargs):
        return self._replace(**dict((k, v) for k, v in kwargs.items() if v is not None))


def scrub_environment(environ):
    return dict((k, v) for k, v in environ.items() if k not in CREDENTIAL_VARIABLES)


class ConfigRenderer(object):
    def __init__(self, port=MONGODB_PORT, data_dir=DEFAULT_DATA_DIR, pid_file=DEFAULT_PID_FILE):
        self._port = port
        self._data_dir = data_dir
        self._pid_file = pid_file

    def get_port(self):
        return self._port

    def get_data_dir(self):
        return self._data_dir

    def settings(self, configuration):
        _settings = [
            ('port', str(self._port)),
            ('dbpath', self._data_dir),
            ('pidfilepath', self._pid_file),
            ('nohttpinterface', 'true')
        ]
        # False and unset flags are left out, the engine defaults are off.
        for setting in FLAG_SETTINGS.keys():
            if getattr(configuration, setting):
                _settings.append((setting, 'true'))
        return _settings

    def render(self, configuration):
        lines = ['# mongodb.conf']
        lines.extend('{} = {}'.format(key, value) for key, value in self.settings(configuration))
        return '\n'.join(lines) + '\n'

    def write(self, configuration, path=DEFAULT_CONFIG_PATH):
        contents = self.render(configuration)
        _directory = os.path.dirname(os.path.abspath(path))
        _fd, _tmp = tempfile.mkstemp(prefix='.mongodb.conf.', dir=_directory)
        try:
            with os.fdopen(_fd, 'w') as f:
                f.write(contents)
            os.chmod(_tmp, 0o664)
            os.replace(_tmp, path)
        finally:
            if os.path.exists(_tmp):
                os.unlink(_tmp)
        logger.info("Wrote the engine configuration to '{}'.".format(path))
        return path


def is_usage_error(errors):
    _missing = [e for e in errors if e.key in (ENV_USER, ENV_PASSWORD, ENV_DATABASE) and e.missing]
    return bool(_missing)
