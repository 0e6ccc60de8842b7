import subprocess


class CollectRunner(object):
    def __init__(self, fn_respond=None, journal=None):
        """
        A drop-in replacement for the subprocess run helper.
        :param fn_respond: Called with the argument list, returns (returncode, stdout). Defaults to success.
        :param journal: Optional list shared with other fakes to record the order of calls.
        """
        self._fn_respond = (lambda args: (0, '')) if fn_respond is None else fn_respond
        self._journal = journal
        self._calls = []

    def __call__(self, args, **kwargs):
        self._calls.append(list(args))
        if self._journal is not None:
            self._journal.append(('run', list(args)))
        returncode, stdout = self._fn_respond(list(args))
        return subprocess.CompletedProcess(args, returncode, stdout=stdout, stderr=None)

    def collect(self):
        return self._calls

    def get_latest(self):
        return self._calls[-1]

    def clear(self):
        self._calls = []


class FakeProcess(object):
    def __init__(self, args, env=None, stdout=None, journal=None, exit_code=0, hang=False, crash=None):
        """
        A drop-in replacement for subprocess.Popen.
        :param exit_code: The return code once terminated.
        :param hang: Ignore the termination request, wait() then times out.
        :param crash: Exit with this return code right away.
        """
        self.args = list(args)
        self.env = env
        self.stdout = stdout
        self.pid = 4242
        self.returncode = crash
        self.signals = []
        self._journal = journal
        self._exit_code = exit_code
        self._hang = hang

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if self.returncode is None and self._hang:
            raise subprocess.TimeoutExpired(self.args, timeout)
        if self.returncode is None:
            self.returncode = self._exit_code
        if self._journal is not None:
            self._journal.append(('exit', self.args))
        return self.returncode

    def send_signal(self, sig):
        self.signals.append(sig)
        if not self._hang and self.returncode is None:
            self.returncode = self._exit_code

    def terminate(self):
        if self._journal is not None:
            self._journal.append(('terminate', self.args))
        self.send_signal(15)


class CollectPopen(object):
    def __init__(self, journal=None, **process_kwargs):
        """
        A drop-in replacement for the subprocess.Popen constructor that keeps the created processes.
        :param process_kwargs: Passed on to every FakeProcess.
        """
        self._journal = journal
        self._kwargs = process_kwargs
        self._processes = []

    def __call__(self, args, env=None, stdout=None, stderr=None, **kwargs):
        process = FakeProcess(args, env=env, stdout=stdout, journal=self._journal, **self._kwargs)
        self._processes.append(process)
        if self._journal is not None:
            self._journal.append(('start', list(args)))
        return process

    def collect(self):
        return self._processes

    def get_latest(self):
        return self._processes[-1]


class CollectSleep(object):
    def __init__(self):
        self._calls = []

    def __call__(self, seconds):
        self._calls.append(seconds)

    def collect(self):
        return self._calls
