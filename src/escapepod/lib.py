#!/usr/bin/env python3
''' escape-pod shared library: logging, errors and the privilege gate '''

import os
import sys

from loguru import logger

LOG_FORMAT = '<level>[{level}]</level> {message}'

class EscapePodError(Exception):
    ''' base class for fatal escape-pod conditions '''
    pass

class PrivilegeError(EscapePodError):
    ''' the effective user cannot change host network state '''
    pass

class ProfileError(EscapePodError):
    ''' invalid profile document or values '''
    pass

class StepFailed(EscapePodError):
    ''' a reconciliation step failed for a reason other than "already done" '''
    def __init__(self, step: str, reason: str):
        self.step = step
        self.reason = reason
        super().__init__(f'{step}: {reason}')

def LoggerConfig(debug: bool, trace: bool):
    '''
    Setup logging configuration.

    Errors are written to stderr, everything below to stdout.
    '''
    level = 'INFO'
    if debug:
        level = 'DEBUG'
    if trace:
        level = 'TRACE'
        pass

    logger.remove()
    logger.add(sys.stdout, level=level, format=LOG_FORMAT,
               filter=lambda record: record['level'].no < logger.level('ERROR').no)
    logger.add(sys.stderr, level='ERROR', format=LOG_FORMAT)
    logger.trace(f'Logging at {level}')
    pass

def check_privileges():
    ''' raise PrivilegeError unless running as root '''
    euid = os.geteuid()
    logger.trace(f'effective uid: {euid}')
    if euid != 0:
        raise PrivilegeError('This script must be run as root')
    return True
