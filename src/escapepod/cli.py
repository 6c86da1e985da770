#!/usr/bin/env python3
''' escape-pod command line: setup, cleanup or status of the escape namespace '''

import sys
from enum import Enum
from typing import Annotated

import typer as t
from loguru import logger

from .hostnet import HostNetwork
from .lib import LoggerConfig, EscapePodError, check_privileges
from .profile import Profile
from .reconciler import Reconciler
from .version import VERSION

EPILOG = ('Example: escape-pod setup, then '
          'sudo ip netns exec home curl icanhazip.com')

app = t.Typer(add_completion=False, epilog=EPILOG,
                  help='Run applications outside of a system-wide VPN/wireguard tunnel.')

class Action(str, Enum):
    setup = 'setup'
    cleanup = 'cleanup'
    status = 'status'

def load_profile(config: str) -> Profile:
    ''' profile from a YAML file, or the built-in defaults '''
    if not config:
        logger.debug('No profile given, using defaults')
        return Profile()
    logger.debug(f'Load profile {config}')
    return Profile.load_profile(config)

@app.command()
def main(action:  Annotated[Action, t.Argument(help='setup: create and configure the namespace, '
                                                        'cleanup: remove the namespace and all related configuration, '
                                                        'status: check the namespace')],
         config:  Annotated[str,  t.Option(envvar='ESCAPEPOD_CONFIG', help='YAML profile')] = '',
         dryrun:  Annotated[bool, t.Option(help='log changes instead of making them')] = False,
         debug:   Annotated[bool, t.Option(help='debug logging')] = False,
         trace:   Annotated[bool, t.Option(help='trace logging')] = False):
    ''' create, remove or check a network namespace that bypasses the VPN '''
    LoggerConfig(debug, trace)
    logger.debug(f'escape-pod {VERSION}: {action.value}')

    try:
        check_privileges()
        profile = load_profile(config)
        reconciler = Reconciler(profile, HostNetwork(dryrun=dryrun))
        if action is Action.setup:
            reconciler.setup()
        elif action is Action.cleanup:
            reconciler.cleanup()
        else:
            report = reconciler.status()
            if not report.ok:
                sys.exit(1)
    except (EscapePodError, OSError) as exc:
        logger.error(str(exc))
        sys.exit(1)

    return 0

if __name__ == "__main__":
    app()
