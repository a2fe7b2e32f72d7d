#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import copy
import json
import logging
import sys

import yaml


LOG_FORMAT = '[%(asctime).19s] [%(name)s] [%(levelname)s] %(message)s'

# Every key the service reads, with its default
DEFAULTS = {
    'nats': {
        'servers': ['nats://localhost:4222'],
        'name': 'subathon-timer',
        'max_reconnect_attempts': -1,  # Reconnect forever
        'reconnect_wait': 2,
    },
    'logging': {
        'level': 'info',
        'file': None,
    },
    'subathon': {
        'state_file': 'timer_state.json',
        'autosave_interval': 30,
        'initial_time': 3600,
        'enable_simulation': False,
        'settings': {},
    },
}


class ConfigError(Exception):
    """Raised when a configuration file cannot be loaded."""
    pass


class RobustFileHandler(logging.FileHandler):
    """FileHandler that tolerates flush errors on odd file handles"""

    def flush(self):
        """Flush the stream, ignoring EINVAL from the OS"""
        try:
            super().flush()
        except OSError as e:
            # Seen on Windows and some network mounts
            if e.errno != 22:  # EINVAL
                raise


def configure_logger(logger,
                     log_file=None,
                     log_format=None,
                     log_level=logging.INFO):
    """Configure a logger with a file or stream handler

    Args:
        logger: Logger instance or logger name string
        log_file: File path string or file-like object (None for stderr)
        log_format: Format string for log messages
        log_level: Logging level (e.g., logging.INFO, logging.DEBUG)

    Returns:
        Configured logger instance
    """
    if isinstance(log_file, str):
        handler = RobustFileHandler(
            log_file,
            mode='a',
            encoding='utf-8',
            errors='replace'
        )
    else:
        handler = logging.StreamHandler(log_file)  # Default to stderr if None

    if isinstance(logger, str):
        logger = logging.getLogger(logger)

    handler.setFormatter(logging.Formatter(log_format or LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(log_level)

    return logger


def parse_log_level(name):
    """Map a level name ('info', 'DEBUG', ...) to a logging constant

    Unknown names fall back to INFO.
    """
    level = getattr(logging, str(name).upper(), None)
    return level if isinstance(level, int) else logging.INFO


def merge_defaults(conf, defaults=DEFAULTS):
    """Return a copy of defaults with conf layered on top

    Nested dictionaries are merged key by key; any other value in conf
    replaces the default outright.
    """
    merged = copy.deepcopy(defaults)
    for key, value in (conf or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_defaults(value, merged[key])
        else:
            merged[key] = value
    return merged


def load_config(config_file):
    """Load a JSON or YAML configuration file and fill in defaults

    Args:
        config_file: Path to a .json, .yaml or .yml file

    Returns:
        Configuration dictionary

    Raises:
        ConfigError: If the file cannot be read or parsed, or its top
            level is not a mapping
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as fp:
            if str(config_file).endswith(('.yaml', '.yml')):
                conf = yaml.safe_load(fp)
            else:
                conf = json.load(fp)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f'Could not load config {config_file}: {e}') from e

    if conf is None:
        conf = {}
    if not isinstance(conf, dict):
        raise ConfigError(f'Config {config_file} must contain a mapping')

    return merge_defaults(conf)


def configure_logging(conf):
    """Configure the root logger from the 'logging' section

    Logs to stderr, plus the configured file if any.
    """
    logging_config = conf.get('logging', {})
    log_level = parse_log_level(logging_config.get('level', 'info'))

    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    log_file = logging_config.get('file')
    if log_file:
        configure_logger(logging.getLogger(), log_file, LOG_FORMAT, log_level)


def get_config(argv=None):
    """Load configuration from the file named on the command line

    With no argument the built-in defaults are used.

    Returns:
        Configuration dictionary, with logging already configured

    Exits:
        Exits with status 1 on bad usage or an unloadable file
    """
    argv = sys.argv if argv is None else argv

    if len(argv) > 2:
        print('usage: %s [config file]' % argv[0], file=sys.stderr)
        sys.exit(1)

    if len(argv) == 2:
        try:
            conf = load_config(argv[1])
        except ConfigError as e:
            print(f'ERROR: {e}', file=sys.stderr)
            sys.exit(1)
    else:
        conf = merge_defaults({})

    configure_logging(conf)
    return conf
