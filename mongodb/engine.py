import logging
import os
import subprocess

from bson import json_util

from core import MongoBootstrapError, MONGODB_PORT
from mongodb24.utils import _run, tail

logger = logging.getLogger(__name__)

ADMIN_USER = 'admin'
ADMIN_DATABASE = 'admin'
ADMIN_ROLES = ['dbAdminAnyDatabase', 'userAdminAnyDatabase', 'readWriteAnyDatabase', 'clusterAdmin']
APPLICATION_ROLES = ['readWrite']

# The shell exits zero on most script errors, fail explicitly when the last write did not succeed.
_ADD_USER_SCRIPT = '''var target = db.getSiblingDB({database});
target.addUser({document});
var err = target.getLastError();
if (err) {{
    print('addUser failed: ' + err);
    quit(1);
}}
'''


class ReadinessError(MongoBootstrapError):
    def __init__(self, msg, output=None):
        super(ReadinessError, self).__init__(msg)
        self.output = output


class ProvisioningError(MongoBootstrapError):
    def __init__(self, msg, output=None):
        super(ProvisioningError, self).__init__(msg)
        self.output = output


class EngineError(MongoBootstrapError):
    pass


def _literal(value):
    return json_util.dumps(value)


def add_user_script(database, user, password, roles):
    document = {'user': user, 'pwd': password, 'roles': list(roles)}
    return _ADD_USER_SCRIPT.format(database=_literal(database), document=_literal(document))


class MongodProcess(object):
    def __init__(self, args, env=None, log_file=None, fn_popen=subprocess.Popen):
        """
        A single run of the database engine.
        :param args: The full command line.
        :param env: The process environment, inherited when None.
        :param log_file: Capture the engine output in this file instead of passing it through.
        """
        self._args = list(args)
        self._env = env
        self._log_file = log_file
        self._fn_popen = fn_popen
        self._process = None

    def get_args(self):
        return self._args

    def start(self):
        if self._process is not None:
            raise EngineError("The engine was already started.")
        try:
            if self._log_file is None:
                self._process = self._fn_popen(self._args, env=self._env)
            else:
                with open(self._log_file, mode='a') as f:
                    self._process = self._fn_popen(self._args, env=self._env, stdout=f, stderr=subprocess.STDOUT)
        except OSError as e:
            raise EngineError("Could not start '{}': {}".format(self._args[0], e))
        logger.info("Started the engine with pid {}.".format(self._process.pid))
        return self

    def is_running(self):
        return self._process is not None and self._process.poll() is None

    def get_returncode(self):
        return None if self._process is None else self._process.poll()

    def send_signal(self, sig):
        if self.is_running():
            self._process.send_signal(sig)

    def stop(self, timeout=60.):
        """
        Request a clean shutdown and block until the engine has exited, which releases the lock on the data directory.
        """
        if self._process is None:
            return None
        if self._process.poll() is None:
            self._process.terminate()
        try:
            returncode = self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            raise EngineError("The engine did not stop within {} seconds.".format(timeout))
        logger.info("The engine stopped with exit code {}.".format(returncode))
        return returncode

    def wait(self):
        return self._process.wait()

    def read_log(self, max_lines=50):
        if self._log_file is None or not os.path.exists(self._log_file):
            return ''
        with open(self._log_file, mode='r') as f:
            return tail(f.read(), max_lines=max_lines)


class MongoShell(object):
    def __init__(self, host='127.0.0.1', port=MONGODB_PORT, executable='mongo', fn_run=_run):
        self._host = host
        self._port = port
        self._executable = executable
        self._fn_run = fn_run

    def command(self, database, script, user=None, password=None):
        _command = [self._executable, '--quiet']
        if user is not None:
            _command += ['-u', user, '-p', password]
        return _command + ['{}:{}/{}'.format(self._host, self._port, database), '--eval', script]

    def eval(self, database, script, user=None, password=None):
        return self._fn_run(self.command(database, script, user=user, password=password))

    def ping(self):
        return self.eval(ADMIN_DATABASE, 'help').returncode == 0

    def add_user(self, database, user, password, roles):
        result = self.eval(database, add_user_script(database, user, password, roles))
        if result.returncode != 0:
            raise ProvisioningError("Could not create user '{}' on database '{}'.".format(user, database), output=result.stdout)
        logger.info("Created user '{}' on database '{}' with roles {}.".format(user, database, ', '.join(roles)))

    def add_admin_user(self, password):
        self.add_user(ADMIN_DATABASE, ADMIN_USER, password, ADMIN_ROLES)

    def add_application_user(self, database, user, password):
        self.add_user(database, user, password, APPLICATION_ROLES)
