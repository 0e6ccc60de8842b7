import logging
import os
import signal
import subprocess
import threading
import time

from core import ConfigRenderer, MongoBootstrapError, ConfigurationError, StartupOptions, scrub_environment
from core import DEFAULT_CONFIG_PATH
from engine import MongodProcess, MongoShell, EngineError, ReadinessError
from mongodb24.utils import get_or_create_directory, wait_until
from mongodb24.utils.option import PropertyError

logger = logging.getLogger(__name__)

STATE_UNINITIALIZED = 'state.uninitialized'
STATE_INITIALIZED = 'state.initialized'
STATE_BOOTSTRAPPING = 'state.bootstrapping'
STATE_USER_PROVISIONED = 'state.user_provisioned'
STATE_RUNNING = 'state.running'
STATE_FAILED = 'state.failed'

_TRANSITIONS = {
    STATE_UNINITIALIZED: (STATE_BOOTSTRAPPING, STATE_FAILED),
    STATE_BOOTSTRAPPING: (STATE_USER_PROVISIONED, STATE_FAILED),
    STATE_USER_PROVISIONED: (STATE_RUNNING, STATE_FAILED),
    STATE_INITIALIZED: (STATE_RUNNING, STATE_FAILED),
    STATE_RUNNING: (STATE_FAILED,),
    STATE_FAILED: ()
}

BOOTSTRAP_MARKER = '.mongodb_bootstrap_incomplete'
BOOTSTRAP_LOG = 'mongod-bootstrap.log'


class IllegalStateError(MongoBootstrapError):
    def __init__(self, current, target):
        super(IllegalStateError, self).__init__("Illegal transition from '{}' to '{}'.".format(current, target))
        self.current = current
        self.target = target


def detect_state(data_dir):
    """
    An empty data directory is the only sign of a first boot.
    A directory still holding the bootstrap marker belongs to an earlier bootstrap that did not complete.
    """
    if not os.path.isdir(data_dir) or not os.listdir(data_dir):
        return STATE_UNINITIALIZED
    if os.path.exists(os.path.join(data_dir, BOOTSTRAP_MARKER)):
        raise ConfigurationError([PropertyError(data_dir, "An earlier bootstrap did not complete, "
                                                          "the users may be missing. Remove the data and start again.")])
    return STATE_INITIALIZED


class BootstrapSequencer(object):
    def __init__(self, configuration,
                 renderer=None,
                 options=None,
                 config_path=DEFAULT_CONFIG_PATH,
                 engine_args=None,
                 executable='mongod',
                 environ=None,
                 fn_popen=subprocess.Popen,
                 shell=None,
                 fn_sleep=time.sleep):
        self._configuration = configuration
        self._renderer = ConfigRenderer() if renderer is None else renderer
        self._options = StartupOptions(attempts=60, interval=1., stop_timeout=60.) if options is None else options
        self._config_path = config_path
        self._engine_args = [] if engine_args is None else list(engine_args)
        self._executable = executable
        self._environ = dict(os.environ) if environ is None else environ
        self._fn_popen = fn_popen
        self._shell = MongoShell(port=self._renderer.get_port()) if shell is None else shell
        self._fn_sleep = fn_sleep
        self._lock = threading.RLock()
        self._quit_event = threading.Event()
        self._state = None
        self._history = []
        self._engine = None

    def get_state(self):
        return self._state

    def get_history(self):
        return list(self._history)

    def get_engine(self):
        return self._engine

    def _transition(self, target):
        if self._state is not None and target not in _TRANSITIONS[self._state]:
            raise IllegalStateError(self._state, target)
        logger.info("{} -> {}".format(self._state, target))
        self._state = target
        self._history.append(target)

    def _data_dir(self):
        return self._renderer.get_data_dir()

    def _marker(self):
        return os.path.join(self._data_dir(), BOOTSTRAP_MARKER)

    def _command(self, *extra):
        return [self._executable, '-f', self._config_path] + list(extra)

    def _start_engine(self, args, env, log_file=None):
        with self._lock:
            if self._quit_event.is_set():
                raise EngineError("Shutdown requested, the engine is not started.")
            self._engine = MongodProcess(args, env=env, log_file=log_file, fn_popen=self._fn_popen).start()
            # A signal handled while the process was being created found no engine to forward to.
            if self._quit_event.is_set():
                self._engine.send_signal(signal.SIGTERM)
            return self._engine

    def _wait_for_engine_up(self, engine):
        options = self._options

        def _check():
            # Stop early when the engine died, e.g. due to a lock held on the data directory.
            if not engine.is_running():
                raise ReadinessError("The engine exited with code {} while starting.".format(engine.get_returncode()),
                                     output=engine.read_log())
            return self._shell.ping()

        attempt = wait_until(_check, options.attempts, options.interval, fn_sleep=self._fn_sleep,
                             fn_abort=self._quit_event.is_set)
        if attempt < 0 and self._quit_event.is_set():
            raise ReadinessError("Shutdown requested while waiting for the engine to accept connections.",
                                 output=engine.read_log())
        if attempt < 0:
            raise ReadinessError("The engine did not accept connections after {} attempts.".format(options.attempts),
                                 output=engine.read_log())
        logger.info("The engine accepts connections after {} attempt(s).".format(attempt))

    def _provision(self):
        _config = self._configuration
        if _config.is_admin_requested():
            self._shell.add_admin_user(_config.admin_password)
        self._shell.add_application_user(_config.database, _config.user, _config.password)

    def _stop_temporary_engine(self, engine):
        returncode = engine.stop(timeout=self._options.stop_timeout)
        if returncode != 0:
            raise EngineError("The temporary engine exited with code {}.".format(returncode))

    def bootstrap(self):
        self._transition(STATE_BOOTSTRAPPING)
        with open(self._marker(), mode='w'):
            pass
        _log_file = os.path.join(os.path.dirname(os.path.abspath(self._config_path)), BOOTSTRAP_LOG)
        # Without auth the engine must not be reachable from the network.
        engine = self._start_engine(self._command('--bind_ip', '127.0.0.1'), scrub_environment(self._environ), _log_file)
        try:
            self._wait_for_engine_up(engine)
            self._provision()
        except Exception as e:
            _output = getattr(e, 'output', None)
            if _output:
                logger.error("The engine reported:\n{}".format(_output))
            try:
                engine.stop(timeout=self._options.stop_timeout)
            except EngineError as stop_error:
                logger.error(stop_error)
            raise
        self._stop_temporary_engine(engine)
        os.remove(self._marker())
        self._transition(STATE_USER_PROVISIONED)

    def start(self):
        """
        Render the configuration, bootstrap when needed and start the final engine.
        """
        self._renderer.write(self._configuration, path=self._config_path)
        _data_dir = get_or_create_directory(self._data_dir())
        try:
            self._transition(detect_state(_data_dir))
            if self._state == STATE_UNINITIALIZED:
                logger.info("The data directory '{}' is empty, creating users.".format(_data_dir))
                self.bootstrap()
            else:
                logger.info("The data directory '{}' is initialized, skipping user creation.".format(_data_dir))
            engine = self._start_engine(self._command('--auth', *self._engine_args), scrub_environment(self._environ))
            self._transition(STATE_RUNNING)
            return engine
        except MongoBootstrapError:
            if self._state is not None and self._state != STATE_FAILED:
                self._transition(STATE_FAILED)
            raise

    def run(self):
        engine = self.start()
        returncode = engine.wait()
        logger.info("The engine exited with code {}.".format(returncode))
        return returncode

    def quit(self, sig=signal.SIGTERM):
        with self._lock:
            self._quit_event.set()
            if self._engine is not None:
                self._engine.send_signal(sig)
