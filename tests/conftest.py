''' shared fixtures: in-memory stand-ins for the host network stack '''

import errno
import subprocess
from pathlib import Path

import pytest
from loguru import logger
from pyroute2.netlink.exceptions import NetlinkError

from escapepod.lib import LoggerConfig
from escapepod.hostnet import NETNS_ETC, HostNetwork, Outcome, Result
from escapepod.profile import Profile

class FakeHost:
    ''' kernel-like state with the HostNetwork interface

    links are keyed (netns, ifname), netns None is the root namespace.
    rules and filter rules are lists, like the kernel they accept duplicates.
    '''

    def __init__(self, resolv_ok: bool = True, ping_ok: bool = True):
        self.namespaces = set()
        self.links = {}
        self.addresses = set()
        self.routes = set()
        self.rules = []
        self.filter_rules = []
        self.resolver_dirs = set()
        self.resolv_ok = resolv_ok
        self.ping_ok = ping_ok
        self.mutations = []
        self.queries = []
        self.failures = {}

    def snapshot(self):
        return (sorted(self.namespaces),
                sorted((str(k), v['up']) for k, v in self.links.items()),
                sorted(self.addresses),
                sorted(self.routes),
                sorted(str(x) for x in self.rules),
                sorted(str(x) for x in self.filter_rules),
                sorted(self.resolver_dirs))

    def _record(self, name, *args):
        self.mutations.append((name,) + args)
        if name in self.failures:
            return Result(Outcome.FAILED, self.failures[name])
        return None

    def _forget(self, key):
        netns, ifname = key
        self.addresses = {a for a in self.addresses if (a[0], a[1]) != (str(netns), ifname)}
        if netns is not None:
            self.routes = {r for r in self.routes if r[0] != netns}

    def _drop_link(self, key):
        link = self.links.pop(key, None)
        if link is None:
            return
        self._forget(key)
        if link["peer"]:
            self.links.pop(link["peer"], None)
            self._forget(link["peer"])

    ## predicates
    def namespace_exists(self, name):
        self.queries.append(('namespace_exists', name))
        return name in self.namespaces

    def link_exists(self, ifname, netns=None):
        self.queries.append(('link_exists', ifname, netns))
        return (netns, ifname) in self.links

    def rule_exists(self, rule):
        self.queries.append(('rule_exists', rule))
        return rule in self.rules

    def filter_rule_exists(self, rule):
        self.queries.append(('filter_rule_exists', rule))
        return rule in self.filter_rules

    def resolver_dir(self, namespace):
        return Path(NETNS_ETC) / namespace

    def resolver_dir_exists(self, namespace):
        self.queries.append(('resolver_dir_exists', namespace))
        return namespace in self.resolver_dirs

    def ping(self, netns, address, timeout=2):
        self.queries.append(('ping', netns, str(address), timeout))
        return self.ping_ok and netns in self.namespaces

    ## mutators
    def add_namespace(self, name):
        failed = self._record('add_namespace', name)
        if failed:
            return failed
        if name in self.namespaces:
            return Result(Outcome.DUPLICATE, f'Cannot create namespace file "/run/netns/{name}": File exists')
        self.namespaces.add(name)
        self.links[(name, 'lo')] = {'up': False, 'peer': None}
        return Result(Outcome.CREATED)

    def delete_namespace(self, name):
        failed = self._record('delete_namespace', name)
        if failed:
            return failed
        if name not in self.namespaces:
            return Result(Outcome.ABSENT, 'No such file or directory')
        self.namespaces.discard(name)
        for key in [k for k in self.links if k[0] == name]:
            self._drop_link(key)
        self.routes = {r for r in self.routes if r[0] != name}
        return Result(Outcome.REMOVED)

    def link_up(self, ifname, netns=None):
        failed = self._record('link_up', ifname, netns)
        if failed:
            return failed
        if (netns, ifname) not in self.links:
            return Result(Outcome.FAILED, f'Cannot find device "{ifname}"')
        self.links[(netns, ifname)]['up'] = True
        return Result(Outcome.CREATED)

    def add_veth(self, host_ifname, peer_ifname, netns):
        failed = self._record('add_veth', host_ifname, peer_ifname, netns)
        if failed:
            return failed
        if (None, host_ifname) in self.links:
            return Result(Outcome.DUPLICATE, 'RTNETLINK answers: File exists')
        if netns not in self.namespaces:
            return Result(Outcome.FAILED, f'Invalid "netns" value "{netns}"')
        self.links[(None, host_ifname)] = {'up': False, 'peer': (netns, peer_ifname)}
        self.links[(netns, peer_ifname)] = {'up': False, 'peer': (None, host_ifname)}
        return Result(Outcome.CREATED)

    def delete_link(self, ifname):
        failed = self._record('delete_link', ifname)
        if failed:
            return failed
        if (None, ifname) not in self.links:
            return Result(Outcome.ABSENT, f'Cannot find device "{ifname}"')
        self._drop_link((None, ifname))
        return Result(Outcome.REMOVED)

    def add_address(self, ifname, cidr, netns=None):
        failed = self._record('add_address', ifname, str(cidr), netns)
        if failed:
            return failed
        if (netns, ifname) not in self.links:
            return Result(Outcome.FAILED, f'Cannot find device "{ifname}"')
        entry = (str(netns), ifname, str(cidr))
        if entry in self.addresses:
            return Result(Outcome.DUPLICATE, 'Error: ipv4: Address already assigned.')
        self.addresses.add(entry)
        return Result(Outcome.CREATED)

    def add_default_route(self, gateway, netns):
        failed = self._record('add_default_route', str(gateway), netns)
        if failed:
            return failed
        if netns not in self.namespaces:
            return Result(Outcome.FAILED, f'Cannot open network namespace "{netns}"')
        if any(r[0] == netns for r in self.routes):
            return Result(Outcome.DUPLICATE, 'RTNETLINK answers: File exists')
        self.routes.add((netns, str(gateway)))
        return Result(Outcome.CREATED)

    def add_rule(self, rule):
        failed = self._record('add_rule', rule)
        if failed:
            return failed
        self.rules.append(rule)
        return Result(Outcome.CREATED)

    def delete_rule(self, rule):
        failed = self._record('delete_rule', rule)
        if failed:
            return failed
        if rule not in self.rules:
            return Result(Outcome.ABSENT, 'RTNETLINK answers: No such file or directory')
        self.rules.remove(rule)
        return Result(Outcome.REMOVED)

    def add_filter_rule(self, rule):
        failed = self._record('add_filter_rule', rule)
        if failed:
            return failed
        self.filter_rules.append(rule)
        return Result(Outcome.CREATED)

    def delete_filter_rule(self, rule):
        failed = self._record('delete_filter_rule', rule)
        if failed:
            return failed
        if rule not in self.filter_rules:
            return Result(Outcome.ABSENT, 'Bad rule (does a matching rule exist in that chain?)')
        self.filter_rules.remove(rule)
        return Result(Outcome.REMOVED)

    def install_resolver(self, namespace, source):
        failed = self._record('install_resolver', namespace, str(source))
        if failed:
            return failed
        self.resolver_dirs.add(namespace)
        if not self.resolv_ok:
            return Result(Outcome.FAILED, f"No such file or directory: '{source}'")
        return Result(Outcome.CREATED)

    def remove_resolver_dir(self, namespace):
        failed = self._record('remove_resolver_dir', namespace)
        if failed:
            return failed
        self.resolver_dirs.discard(namespace)
        return Result(Outcome.REMOVED)

class FakeRuleMessage(dict):
    ''' the parts of a pyroute2 fib rule message that rule lookups read '''
    def get_attr(self, name):
        return self['attrs'].get(name)

def fib_rule(priority, table, src=None):
    attrs = {'FRA_PRIORITY': priority, 'FRA_TABLE': table}
    if src:
        attrs['FRA_SRC'] = src
    return FakeRuleMessage(table=table if table < 256 else 252,
                           src_len=32 if src else 0, attrs=attrs)

class FakeNetlinkSocket:
    ''' IPRoute/NetNS look-alike bound to one namespace of a FakeKernel '''

    def __init__(self, kernel, netns):
        self.kernel = kernel
        self.netns = netns

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def _key(self, index):
        for key, link in self.kernel.links.items():
            if key[0] == self.netns and link['index'] == index:
                return key
        raise NetlinkError(errno.ENODEV, 'No such device')

    def link_lookup(self, ifname):
        link = self.kernel.links.get((self.netns, ifname))
        return [link['index']] if link else []

    def link(self, command, **kwargs):
        kernel = self.kernel
        kernel._request('link', command, self.netns, kwargs)
        if command == 'add':
            ifname = kwargs['ifname']
            peer_ns = kwargs['peer']['net_ns_fd']
            peer_ifname = kwargs['peer']['ifname']
            if (self.netns, ifname) in kernel.links:
                raise NetlinkError(errno.EEXIST, 'File exists')
            if peer_ns not in kernel.netns:
                raise FileNotFoundError(errno.ENOENT, 'No such file or directory')
            kernel._add_link(self.netns, ifname, peer=(peer_ns, peer_ifname))
            kernel._add_link(peer_ns, peer_ifname, peer=(self.netns, ifname))
        elif command == 'set':
            kernel.links[self._key(kwargs['index'])]['up'] = kwargs['state'] == 'up'
        elif command == 'del':
            kernel._drop_link(self._key(kwargs['index']))

    def addr(self, command, index, address, prefixlen):
        self.kernel._request('addr', command, self.netns, address, prefixlen)
        netns, ifname = self._key(index)
        entry = (netns, ifname, address, prefixlen)
        if entry in self.kernel.addresses:
            raise NetlinkError(errno.EEXIST, 'Address already assigned')
        self.kernel.addresses.add(entry)

    def route(self, command, dst, gateway):
        self.kernel._request('route', command, self.netns, dst, gateway)
        if any(r[0] == self.netns for r in self.kernel.routes):
            raise NetlinkError(errno.EEXIST, 'File exists')
        self.kernel.routes.add((self.netns, gateway))

    def get_rules(self, family):
        return iter(list(self.kernel.rules))

    def rule(self, command, family, src, src_len, table, priority):
        self.kernel._request('rule', command, src, table, priority)
        msg = fib_rule(priority, table, src)
        if command == 'add':
            if msg in self.kernel.rules:
                raise NetlinkError(errno.EEXIST, 'File exists')
            self.kernel.rules.append(msg)
        elif command == 'del':
            if msg not in self.kernel.rules:
                raise NetlinkError(errno.ENOENT, 'No such file or directory')
            self.kernel.rules.remove(msg)

class FakeKernel:
    ''' netlink and /var/run/netns state behind HostNetwork

    Serves as both the netlink factory and the namespaces module, and
    raises the kernel's errno where the kernel would.
    '''

    def __init__(self):
        self.netns = []
        self.links = {}
        self.addresses = set()
        self.routes = set()
        self.rules = [fib_rule(0, 255), fib_rule(32766, 254), fib_rule(32767, 253)]
        self.requests = []
        self.failures = {}
        self._next_index = 1
        self._add_link(None, 'lo')

    def __call__(self, netns=None):
        if netns is not None and netns not in self.netns:
            raise FileNotFoundError(errno.ENOENT, 'No such file or directory')
        return FakeNetlinkSocket(self, netns)

    def snapshot(self):
        return (sorted(self.netns),
                sorted((str(k), v['up']) for k, v in self.links.items()),
                sorted(str(a) for a in self.addresses),
                sorted(str(r) for r in self.routes),
                [dict(r) for r in self.rules])

    def _request(self, method, *args):
        self.requests.append((method,) + args)
        if method in self.failures:
            raise self.failures[method]

    def _add_link(self, netns, ifname, peer=None):
        self.links[(netns, ifname)] = {'index': self._next_index, 'up': False, 'peer': peer}
        self._next_index += 1

    def _drop_link(self, key):
        link = self.links.pop(key, None)
        if link is None:
            return
        self.addresses = {a for a in self.addresses if (a[0], a[1]) != key}
        if key[0] is not None:
            self.routes = {r for r in self.routes if r[0] != key[0]}
        if link['peer']:
            self._drop_link(link['peer'])

    ## pyroute2.netns
    def listnetns(self):
        return list(self.netns)

    def create(self, name):
        self._request('create', name)
        if name in self.netns:
            raise FileExistsError(errno.EEXIST, 'File exists')
        self.netns.append(name)
        self._add_link(name, 'lo')

    def remove(self, name):
        self._request('remove', name)
        if name not in self.netns:
            raise FileNotFoundError(errno.ENOENT, 'No such file or directory')
        self.netns.remove(name)
        for key in [k for k in self.links if k[0] == name]:
            self._drop_link(key)
        self.routes = {r for r in self.routes if r[0] != name}

class FakeIptables:
    ''' command runner: iptables -C/-A/-D over a rule list, every other command exits ping_rc '''
    MISSING = 'iptables: Bad rule (does a matching rule exist in that chain?).'

    def __init__(self, ping_rc: int = 0):
        self.rules = []
        self.calls = []
        self.ping_rc = ping_rc

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        if cmd[0] != 'iptables':
            return subprocess.CompletedProcess(cmd, self.ping_rc, '', '')

        op = cmd[3]
        rule = ' '.join(cmd[:3] + cmd[4:])
        if op == '-A':
            self.rules.append(rule)
        elif rule not in self.rules:
            return subprocess.CompletedProcess(cmd, 1, '', self.MISSING)
        elif op == '-D':
            self.rules.remove(rule)
        return subprocess.CompletedProcess(cmd, 0, '', '')

@pytest.fixture(autouse=True)
def logging_setup():
    LoggerConfig(True, False)
    yield

@pytest.fixture
def records():
    ''' collect loguru records emitted during a test '''
    collected = []
    handler_id = logger.add(lambda message: collected.append(message.record), level='TRACE')
    yield collected
    logger.remove(handler_id)

@pytest.fixture
def profile():
    return Profile()

@pytest.fixture
def host():
    return FakeHost()

@pytest.fixture
def kernel():
    return FakeKernel()

@pytest.fixture
def iptables():
    return FakeIptables()

@pytest.fixture
def adapter(kernel, iptables, tmp_path):
    ''' HostNetwork over the fake kernel, iptables and a scratch /etc/netns '''
    return HostNetwork(runner=iptables, netlink=kernel, namespaces=kernel,
                       netns_etc=tmp_path / 'etc' / 'netns')

@pytest.fixture
def resolv_conf(tmp_path):
    source = tmp_path / 'resolv.conf'
    source.write_text('nameserver 192.0.2.53\n')
    return source
