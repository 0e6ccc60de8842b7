import logging
import os
import subprocess
import time

log_format = '%(levelname)s: %(asctime)s %(filename)s %(funcName)s %(message)s'


def configure_logging(level=logging.INFO):
    logging.basicConfig(format=log_format, datefmt='%Y%m%d:%H:%M:%S %p %Z')
    logging.getLogger().setLevel(level)


def _run(args, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, universal_newlines=True, **kwargs):
    return subprocess.run(args, stdout=stdout, stderr=stderr, universal_newlines=universal_newlines, **kwargs)


def get_or_create_directory(directory, mode=0o775):
    if not os.path.exists(directory):
        _mask = os.umask(000)
        os.makedirs(directory, mode=mode)
        os.umask(_mask)
    return directory


def wait_until(fn_check, attempts, interval, fn_sleep=time.sleep, fn_abort=(lambda: False)):
    """
    Bounded polling.
    :param fn_check: Called once per attempt, truthy when done.
    :param attempts: Maximum number of calls to fn_check.
    :param interval: Seconds to sleep between attempts.
    :param fn_sleep: The sleep function.
    :param fn_abort: Checked before every attempt, stops polling early when truthy.
    :return: The number of attempts used, or -1 when the budget ran out or polling was aborted.
    """
    for attempt in range(1, attempts + 1):
        if fn_abort():
            return -1
        if fn_check():
            return attempt
        if attempt < attempts:
            fn_sleep(interval)
    return -1


def tail(text, max_lines=50):
    lines = [] if text is None else text.splitlines()
    return '\n'.join(lines[-max_lines:])
