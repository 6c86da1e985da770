#!/usr/bin/env python3
''' namespace profile definition and validator functions '''

import ipaddress
from io import StringIO
from pathlib import Path
from ipaddress import IPv4Address, IPv6Address, IPv4Interface
from typing import TextIO, Union

from attrs import define, field, fields
from loguru import logger
from munch import munchify, unmunchify, Munch
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .hostnet import FilterRule, PolicyRule, routing_table
from .lib import ProfileError

## kernel limit on interface names, including the trailing NUL
IFNAMSIZ = 16

def convertInterface(arg) -> IPv4Interface:
    ''' validate and clean up an address/prefix pair '''
    logger.trace(f'convert interface address: {arg}')
    return ipaddress.IPv4Interface(str(arg).strip())

def convertAddress(arg):
    ''' validate and clean up a plain address '''
    logger.trace(f'convert address: {arg}')
    return ipaddress.ip_address(str(arg).strip())

def convertInteger(arg) -> int:
    ''' whole numbers only, 1.9 is an error rather than 1 '''
    if isinstance(arg, bool):
        raise ValueError(f'expected a whole number: {arg!r}')
    if isinstance(arg, int):
        return arg
    if isinstance(arg, float):
        if not arg.is_integer():
            raise ValueError(f'expected a whole number: {arg!r}')
        return int(arg)
    return int(str(arg).strip())

def validateTable(instance, attribute, value):
    ''' rt_tables name or table number '''
    routing_table(value)

def validateName(instance, attribute, value):
    ''' namespace names become file names under /run/netns and /etc/netns '''
    if value in ('', '.', '..') or '/' in value or any(c.isspace() for c in value):
        raise ValueError(f'{attribute.name}: invalid namespace name {value!r}')

def validateIfname(instance, attribute, value):
    ''' same rules as the kernel's dev_valid_name() '''
    if not value or len(value) >= IFNAMSIZ:
        raise ValueError(f'{attribute.name}: interface name must be 1-{IFNAMSIZ - 1} characters: {value!r}')
    if value in ('.', '..') or any(c in '/:' or c.isspace() for c in value):
        raise ValueError(f'{attribute.name}: invalid interface name {value!r}')

def validateRange(low: int, high: int):
    ''' return an inclusive integer range validator '''
    def check(instance, attribute, value):
        if not low <= value <= high:
            raise ValueError(f'{attribute.name}: {value} outside {low}..{high}')
    return check

@define
class Profile:
    ''' desired topology of one escape namespace '''
    namespace:           str = field(default='home', converter=str, validator=validateName)
    veth_host:           str = field(default='to-home', converter=str, validator=validateIfname)
    veth_ns:             str = field(default='from-home', converter=str, validator=validateIfname)
    ip_host:   IPv4Interface = field(default='10.99.99.4/31', converter=convertInterface)
    ip_ns:     IPv4Interface = field(default='10.99.99.5/31', converter=convertInterface)
    rule_priority:       int = field(default=99, converter=convertInteger, validator=validateRange(1, 32765))
    rule_table:          str = field(default='main', converter=str, validator=validateTable)
    dns_server: Union[IPv4Address, IPv6Address] = field(default='1.1.1.1', converter=convertAddress)
    resolv_source:       str = field(default='/run/systemd/resolve/resolv.conf', converter=str)
    ping_timeout:        int = field(default=2, converter=convertInteger, validator=validateRange(1, 60))

    def __attrs_post_init__(self):
        if self.veth_host == self.veth_ns:
            raise ValueError(f'veth_host and veth_ns must differ: {self.veth_host}')
        if self.ip_host.network != self.ip_ns.network:
            raise ValueError(f'{self.ip_host} and {self.ip_ns} are not on the same network')
        if self.ip_host.ip == self.ip_ns.ip:
            raise ValueError(f'ip_host and ip_ns share the address {self.ip_ns.ip}')

    @property
    def source(self) -> IPv4Address:
        ''' namespace side address, the key of the rule and the filter rules '''
        return self.ip_ns.ip

    @property
    def gateway(self) -> IPv4Address:
        return self.ip_host.ip

    @property
    def policy_rule(self) -> PolicyRule:
        return PolicyRule(self.source, self.rule_table, self.rule_priority)

    @property
    def nat_rule(self) -> FilterRule:
        return FilterRule('POSTROUTING', ('-s', str(self.source)), 'MASQUERADE', table='nat')

    @property
    def forward_established_rule(self) -> FilterRule:
        ''' shared with whatever else forwards on this host, never removed '''
        return FilterRule('FORWARD', ('-m', 'state', '--state', 'ESTABLISHED,RELATED'), 'ACCEPT')

    @property
    def forward_source_rule(self) -> FilterRule:
        return FilterRule('FORWARD', ('-s', str(self.source)), 'ACCEPT')

    def publish(self) -> Munch:
        ''' export the profile as plain values '''
        retval = {}
        for attribute in fields(type(self)):
            value = getattr(self, attribute.name)
            retval[attribute.name] = value if isinstance(value, int) else str(value)
            continue
        return munchify(retval)

    def save_profile(self) -> str:
        ''' render the profile as a YAML document '''
        yaml = YAML(typ='rt')
        buffer = StringIO()
        yaml.dump({'profile': unmunchify(self.publish())}, buffer)
        buffer.seek(0)
        return buffer.read()

    @classmethod
    def load_profile(cls, source_file: Union[str, Path, TextIO]) -> 'Profile':
        ''' load a profile from a YAML file name or an open stream

            profile:
              namespace: home
              ...
        '''
        yaml = YAML(typ='rt')
        try:
            if isinstance(source_file, (str, Path)):
                with open(source_file, 'r', encoding='utf-8') as pf:
                    y = yaml.load(pf)
            else:
                y = yaml.load(source_file)
        except OSError as exc:
            raise ProfileError(f'Unable to read profile: {exc}') from exc
        except YAMLError as exc:
            raise ProfileError(f'Invalid profile document: {exc}') from exc

        y = y or {}
        if not isinstance(y, dict):
            raise ProfileError('Profile document must be a mapping')
        values = y.get('profile') or {}
        if not isinstance(values, dict):
            raise ProfileError('"profile" must be a mapping')
        logger.trace(f'Profile: {dict(values)}')

        known = {attribute.name for attribute in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ProfileError(f'Unknown profile keys: {", ".join(unknown)}')

        try:
            return cls(**dict(values))
        except (TypeError, ValueError) as exc:
            raise ProfileError(f'Invalid profile: {exc}') from exc
