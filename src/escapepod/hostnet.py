#!/usr/bin/env python3
''' host network adapter

Namespaces, links, addresses, routes and policy rules are driven over
netlink with pyroute2.  iptables(8) and ping(8) run as commands, and the
per-namespace resolver lives under /etc/netns.  Predicates never raise,
mutators return a typed Result.
'''

import errno
import os
import shutil
import stat
import subprocess
from enum import Enum
from pathlib import Path
from socket import AF_INET
from ipaddress import ip_address, ip_interface, IPv4Address
from typing import Callable, List, Optional, Tuple, Union

import pyroute2
import pyroute2.netns
from attrs import define, field
from loguru import logger
from pyroute2.netlink.exceptions import NetlinkError

## `ip netns exec` bind-mounts resolver files from here only
NETNS_ETC = '/etc/netns'

## rt_tables(5) names every kernel knows
RT_TABLES = {'default': 253, 'main': 254, 'local': 255}

## errno values that mean the target state already holds
DUPLICATE_ERRORS = (errno.EEXIST,)
## errno values that mean there is nothing left to remove
ABSENT_ERRORS = (errno.ENOENT, errno.ENODEV, errno.ESRCH)
## iptables reports a missing rule as text only
ABSENT_MARKERS = ('does a matching rule exist', 'No chain/target/match by that name')

class Outcome(Enum):
    CREATED   = 'applied'
    SATISFIED = 'already present'
    DUPLICATE = 'already configured'
    REMOVED   = 'removed'
    ABSENT    = 'already absent'
    FAILED    = 'failed'

@define
class Result:
    ''' outcome of one mutating call '''
    outcome: Outcome = field()
    reason:      str = field(default='')

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILED

def routing_table(name) -> int:
    ''' numeric id of a routing table given by rt_tables name or number '''
    name = str(name).strip()
    if name in RT_TABLES:
        return RT_TABLES[name]
    if name.isdigit() and 0 < int(name) < 2**32:
        return int(name)
    raise ValueError(f'unknown routing table {name!r}')

@define(frozen=True)
class PolicyRule:
    ''' source based routing rule: from <source> lookup <table>, fixed priority '''
    source: IPv4Address = field(converter=ip_address)
    table:          str = field(default='main')
    priority:       int = field(default=99, converter=int)

    @property
    def table_id(self) -> int:
        return routing_table(self.table)

    def selector(self) -> List[str]:
        return ['from', str(self.source), 'table', self.table, 'priority', str(self.priority)]

    def request(self) -> dict:
        ''' keyword arguments for IPRoute.rule() '''
        return {'family': AF_INET, 'src': str(self.source), 'src_len': 32,
                'table': self.table_id, 'priority': self.priority}

    def matches(self, msg) -> bool:
        ''' match one message of IPRoute.get_rules(): priority, host source and table '''
        table = msg.get_attr('FRA_TABLE') or msg['table']
        return (msg.get_attr('FRA_PRIORITY') == self.priority
                and msg.get_attr('FRA_SRC') == str(self.source)
                and msg['src_len'] == 32
                and table == self.table_id)

    def __str__(self):
        return ' '.join(self.selector())

@define(frozen=True)
class FilterRule:
    ''' one iptables rule, identified by its table, chain, match and target '''
    chain:            str = field()
    match: Tuple[str, ...] = field(converter=tuple)
    target:           str = field()
    table:            str = field(default='filter')

    def command(self, op: str) -> List[str]:
        ''' iptables argv for op: -C (check), -A (append) or -D (delete) '''
        return ['iptables', '-t', self.table, op, self.chain, *self.match, '-j', self.target]

    def __str__(self):
        return ' '.join([f'{self.table}/{self.chain}', *self.match, '-j', self.target])

def run_command(cmd: List[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    ''' run cmd, capture output; a missing binary reports 127 like a shell would '''
    try:
        return subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=timeout)
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(cmd, 127, '', str(exc))
    except subprocess.TimeoutExpired as exc:
        return subprocess.CompletedProcess(cmd, 124, '', f'timed out after {exc.timeout}s')

def open_netlink(netns_name: Optional[str] = None):
    ''' netlink socket in the root namespace, or inside an existing namespace '''
    if netns_name:
        return pyroute2.NetNS(netns_name, flags=0)
    return pyroute2.IPRoute()

def error_code(exc: Exception) -> Optional[int]:
    if isinstance(exc, NetlinkError):
        return exc.code
    return getattr(exc, 'errno', None)

def error_text(exc: Exception) -> str:
    ''' kernel message of a NetlinkError or OSError '''
    if isinstance(exc, NetlinkError):
        if len(exc.args) > 1 and exc.args[1]:
            return str(exc.args[1])
        return os.strerror(exc.code)
    return getattr(exc, 'strerror', None) or str(exc)

def grant_world_read(root: Path, recursive: bool = True):
    ''' chmod o+rX root, and everything below it when recursive '''
    paths = [root, *root.rglob('*')] if recursive else [root]
    for path in paths:
        if path.is_symlink():
            continue
        mode = stat.S_IMODE(path.stat().st_mode)
        extra = stat.S_IROTH
        if path.is_dir() or mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH):
            extra |= stat.S_IXOTH
        path.chmod(mode | extra)
        continue
    pass

class HostNetwork:
    ''' pyroute2 and subprocess backed access to the host network stack

    netlink opens a socket for a namespace (None is the root namespace),
    namespaces provides listnetns/create/remove, runner runs iptables and
    ping.  All three are pyroute2 or subprocess unless a caller injects
    something else.
    '''

    def __init__(self, dryrun: bool = False,
                 runner: Callable[..., subprocess.CompletedProcess] = run_command,
                 netlink: Callable = open_netlink,
                 namespaces=pyroute2.netns,
                 netns_etc: Union[str, Path] = NETNS_ETC):
        self.dryrun = dryrun
        self.runner = runner
        self.netlink = netlink
        self.namespaces = namespaces
        self.netns_etc = Path(netns_etc)

    @staticmethod
    def _describe(args: str, netns: Optional[str] = None) -> str:
        ''' the equivalent ip(8) command line, for logs and failure reasons '''
        if netns:
            return f'ip -n {netns} {args}'
        return f'ip {args}'

    @staticmethod
    def _index(ipr, ifname: str) -> int:
        found = ipr.link_lookup(ifname=ifname)
        if not found:
            raise NetlinkError(errno.ENODEV, f'Cannot find device "{ifname}"')
        return found[0]

    def _query(self, cmd: List[str], **kwargs) -> subprocess.CompletedProcess:
        logger.debug(f'query: {" ".join(cmd)}')
        proc = self.runner(cmd, **kwargs)
        logger.trace(f'rc={proc.returncode} stdout={proc.stdout!r} stderr={proc.stderr!r}')
        return proc

    def _apply(self, description: str, call: Callable[[], None], done: Outcome = Outcome.CREATED) -> Result:
        ''' run one netlink or netns request, classify the kernel's errno '''
        if self.dryrun:
            logger.info(f'dryrun: {description}')
            return Result(done)

        logger.debug(f'run: {description}')
        try:
            call()
        except (NetlinkError, OSError) as exc:
            code = error_code(exc)
            reason = error_text(exc)
            logger.trace(f'errno={code} {reason}')
            if done is Outcome.CREATED and code in DUPLICATE_ERRORS:
                return Result(Outcome.DUPLICATE, reason)
            if done is Outcome.REMOVED and code in ABSENT_ERRORS:
                return Result(Outcome.ABSENT, reason)
            return Result(Outcome.FAILED, f'{description}: {reason}')
        return Result(done)

    def _run(self, cmd: List[str], done: Outcome = Outcome.CREATED) -> Result:
        ''' run one iptables command '''
        line = ' '.join(cmd)
        if self.dryrun:
            logger.info(f'dryrun: {line}')
            return Result(done)

        logger.debug(f'run: {line}')
        proc = self.runner(cmd)
        logger.trace(f'rc={proc.returncode} stdout={proc.stdout!r} stderr={proc.stderr!r}')
        if proc.returncode == 0:
            return Result(done)

        reason = (proc.stderr or proc.stdout or f'exit status {proc.returncode}').strip()
        if done is Outcome.REMOVED and any(x in reason for x in ABSENT_MARKERS):
            return Result(Outcome.ABSENT, reason)
        return Result(Outcome.FAILED, f'{line}: {reason}')

    ##
    ## predicates
    ##

    def namespace_exists(self, name: str) -> bool:
        try:
            found = self.namespaces.listnetns()
        except OSError as exc:
            logger.debug(f'listnetns: {exc}')
            return False
        logger.trace(f'namespaces: {found}')
        return name in found

    def link_exists(self, ifname: str, netns: Optional[str] = None) -> bool:
        logger.debug(f'query: {self._describe(f"link show {ifname}", netns)}')
        try:
            with self.netlink(netns) as ipr:
                return bool(ipr.link_lookup(ifname=ifname))
        except (NetlinkError, OSError) as exc:
            logger.trace(f'link lookup {ifname}: {exc}')
            return False

    def rule_exists(self, rule: PolicyRule) -> bool:
        logger.debug(f'query: ip rule list ({rule})')
        try:
            with self.netlink() as ipr:
                return any(rule.matches(msg) for msg in ipr.get_rules(family=AF_INET))
        except (NetlinkError, OSError) as exc:
            logger.trace(f'rule dump: {exc}')
            return False

    def filter_rule_exists(self, rule: FilterRule) -> bool:
        return self._query(rule.command('-C')).returncode == 0

    def resolver_dir(self, namespace: str) -> Path:
        return self.netns_etc / namespace

    def resolver_dir_exists(self, namespace: str) -> bool:
        return self.resolver_dir(namespace).is_dir()

    def ping(self, netns: str, address, timeout: int = 2) -> bool:
        ''' one echo request from inside netns, waiting at most timeout seconds '''
        cmd = ['ip', 'netns', 'exec', netns, 'ping', '-c1', f'-W{timeout}', str(address)]
        return self._query(cmd, timeout=timeout + 3).returncode == 0

    ##
    ## mutators
    ##

    def add_namespace(self, name: str) -> Result:
        return self._apply(f'ip netns add {name}',
                           lambda: self.namespaces.create(name))

    def delete_namespace(self, name: str) -> Result:
        return self._apply(f'ip netns del {name}',
                           lambda: self.namespaces.remove(name), Outcome.REMOVED)

    def link_up(self, ifname: str, netns: Optional[str] = None) -> Result:
        def call():
            with self.netlink(netns) as ipr:
                ipr.link('set', index=self._index(ipr, ifname), state='up')
        return self._apply(self._describe(f'link set {ifname} up', netns), call)

    def add_veth(self, host_ifname: str, peer_ifname: str, netns: str) -> Result:
        ''' create the pair with the peer end born inside netns '''
        def call():
            with self.netlink() as ipr:
                ipr.link('add', ifname=host_ifname, kind='veth',
                         peer={'ifname': peer_ifname, 'net_ns_fd': netns})
        return self._apply(self._describe(f'link add {host_ifname} type veth '
                                          f'peer name {peer_ifname} netns {netns}'), call)

    def delete_link(self, ifname: str) -> Result:
        def call():
            with self.netlink() as ipr:
                ipr.link('del', index=self._index(ipr, ifname))
        return self._apply(self._describe(f'link delete {ifname}'), call, Outcome.REMOVED)

    def add_address(self, ifname: str, cidr, netns: Optional[str] = None) -> Result:
        iface = ip_interface(str(cidr))
        def call():
            with self.netlink(netns) as ipr:
                ipr.addr('add', index=self._index(ipr, ifname),
                         address=str(iface.ip), prefixlen=iface.network.prefixlen)
        return self._apply(self._describe(f'address add {iface} dev {ifname}', netns), call)

    def add_default_route(self, gateway, netns: str) -> Result:
        def call():
            with self.netlink(netns) as ipr:
                ipr.route('add', dst='default', gateway=str(gateway))
        return self._apply(self._describe(f'route add default via {gateway}', netns), call)

    def add_rule(self, rule: PolicyRule) -> Result:
        def call():
            with self.netlink() as ipr:
                ipr.rule('add', **rule.request())
        return self._apply(self._describe(f'rule add {rule}'), call)

    def delete_rule(self, rule: PolicyRule) -> Result:
        def call():
            with self.netlink() as ipr:
                ipr.rule('del', **rule.request())
        return self._apply(self._describe(f'rule del {rule}'), call, Outcome.REMOVED)

    def add_filter_rule(self, rule: FilterRule) -> Result:
        return self._run(rule.command('-A'))

    def delete_filter_rule(self, rule: FilterRule) -> Result:
        return self._run(rule.command('-D'), Outcome.REMOVED)

    def install_resolver(self, namespace: str, source: Union[str, Path]) -> Result:
        ''' mkdir -p /etc/netns/<namespace>; make it world readable; cp source into it

        Only the copy is allowed to fail softly; directory errors propagate.
        The permission change stops at /etc/netns itself.
        '''
        directory = self.resolver_dir(namespace)
        source = Path(source)
        if self.dryrun:
            logger.info(f'dryrun: mkdir -p {directory}')
            logger.info(f'dryrun: chmod o+rX {self.netns_etc}; chmod -R o+rX {directory}')
            logger.info(f'dryrun: cp {source} {directory}/resolv.conf')
            return Result(Outcome.CREATED)

        logger.debug(f'install {source} into {directory}')
        directory.mkdir(parents=True, exist_ok=True)
        grant_world_read(self.netns_etc, recursive=False)
        grant_world_read(directory)
        try:
            shutil.copy(source, directory / 'resolv.conf')
        except OSError as exc:
            return Result(Outcome.FAILED, str(exc))
        return Result(Outcome.CREATED)

    def remove_resolver_dir(self, namespace: str) -> Result:
        directory = self.resolver_dir(namespace)
        if self.dryrun:
            logger.info(f'dryrun: rm -rf {directory}')
            return Result(Outcome.REMOVED)

        logger.debug(f'remove {directory}')
        try:
            shutil.rmtree(directory)
        except FileNotFoundError as exc:
            return Result(Outcome.ABSENT, str(exc))
        return Result(Outcome.REMOVED)
