#!/usr/bin/env python3
import argparse
import logging
import os
import signal
import sys

from app import BootstrapSequencer
from core import ConfigRenderer, ConfigurationError, EnvironmentConfiguration, MongoBootstrapError, StartupOptions
from core import DEFAULT_CONFIG_PATH, DEFAULT_DATA_DIR, MONGODB_PORT, USAGE, is_usage_error
from mongodb24.utils import configure_logging
from mongodb24.utils.option import positive

logger = logging.getLogger(__name__)

RUN_MODE = 'mongod'


def _create_parser():
    parser = argparse.ArgumentParser(description='MongoDB container entrypoint.')
    parser.add_argument('mode', nargs='?', default=RUN_MODE, choices=[RUN_MODE], help='Run the database server.')
    parser.add_argument('--config', type=str, default=DEFAULT_CONFIG_PATH, help='Configuration file.')
    parser.add_argument('--data', type=str, default=DEFAULT_DATA_DIR, help='Data directory.')
    parser.add_argument('--port', type=int, default=MONGODB_PORT, help='Port the engine listens on.')
    parser.add_argument('--attempts', type=positive(int), default=None, help='Readiness polling attempts.')
    parser.add_argument('--interval', type=positive(float), default=None, help='Seconds between readiness attempts.')
    parser.add_argument('--stop-timeout', type=positive(float), default=None, help='Seconds to wait for the temporary engine to stop.')
    parser.add_argument('engine_args', nargs=argparse.REMAINDER, help='Extra arguments for the final engine.')
    return parser


def create_sequencer(args, environ, **kwargs):
    configuration = EnvironmentConfiguration.from_environ(environ)
    options = StartupOptions.from_environ(environ).replace(attempts=args.attempts,
                                                           interval=args.interval,
                                                           stop_timeout=args.stop_timeout)
    renderer = ConfigRenderer(port=args.port, data_dir=args.data)
    logger.info("Using {} and {}.".format(configuration, options))
    return BootstrapSequencer(configuration,
                              renderer=renderer,
                              options=options,
                              config_path=args.config,
                              engine_args=args.engine_args,
                              environ=environ,
                              **kwargs)


def main(argv=None, environ=None, fn_exec=os.execvp, **kwargs):
    argv = sys.argv[1:] if argv is None else argv
    environ = dict(os.environ) if environ is None else environ
    # Anything but the run mode is executed as is.
    if argv and not argv[0].startswith('-') and argv[0] != RUN_MODE:
        return fn_exec(argv[0], argv)

    args = _create_parser().parse_args(argv)
    try:
        sequencer = create_sequencer(args, environ, **kwargs)
    except ConfigurationError as e:
        for error in e.errors:
            logger.error(error)
        if is_usage_error(e.errors):
            logger.error(USAGE)
        return 1

    signal.signal(signal.SIGINT, lambda sig, frame: sequencer.quit(sig))
    signal.signal(signal.SIGTERM, lambda sig, frame: sequencer.quit(sig))
    try:
        return sequencer.run()
    except MongoBootstrapError as e:
        logger.error(e)
        return 1


if __name__ == "__main__":
    configure_logging()
    sys.exit(main())
