#!/usr/bin/env python3
''' namespace reconciler

setup, cleanup and status for one escape namespace.  Each operation is an
ordered list of Steps; every Step checks the live state before acting so
that any operation can be re-run safely.
'''

from typing import Callable, List, Optional

from attrs import define, field
from loguru import logger

from .hostnet import FilterRule, HostNetwork, Outcome, Result
from .lib import StepFailed
from .profile import Profile

@define
class Step:
    ''' one idempotent operation against the host '''
    name:                      str = field()
    action: Callable[[], Result] = field()
    warn_on_failure:           str = field(default='')

@define
class StatusReport:
    ''' per-resource findings, None when the check was not run '''
    namespace:              bool = field(default=False)
    veth:         Optional[bool] = field(default=None)
    rule:         Optional[bool] = field(default=None)
    nat:          Optional[bool] = field(default=None)
    connectivity: Optional[bool] = field(default=None)

    @property
    def ok(self) -> bool:
        return self.namespace

def create_unless(exists: Callable[[], bool], create: Callable[[], Result]) -> Callable[[], Result]:
    ''' act only when the predicate says the resource is missing '''
    def action() -> Result:
        if exists():
            return Result(Outcome.SATISFIED)
        return create()
    return action

def remove_if(exists: Callable[[], bool], remove: Callable[[], Result]) -> Callable[[], Result]:
    ''' act only when the predicate says the resource is there '''
    def action() -> Result:
        if not exists():
            return Result(Outcome.ABSENT)
        return remove()
    return action

class Reconciler:
    ''' converge the host towards (or away from) a Profile '''

    def __init__(self, profile: Profile, host: HostNetwork):
        self.profile = profile
        self.host = host

    def _add_filter_step(self, label: str, rule: FilterRule) -> Step:
        host = self.host
        return Step(f'{label} ({rule})',
                    create_unless(lambda: host.filter_rule_exists(rule),
                                  lambda: host.add_filter_rule(rule)))

    def _delete_filter_step(self, label: str, rule: FilterRule) -> Step:
        host = self.host
        return Step(f'{label} ({rule})',
                    remove_if(lambda: host.filter_rule_exists(rule),
                              lambda: host.delete_filter_rule(rule)))

    def setup_steps(self) -> List[Step]:
        ''' namespace, loopback, veth, addressing, rule, filter rules, DNS; in that order '''
        p = self.profile
        host = self.host
        return [
            Step(f"Namespace '{p.namespace}'",
                 create_unless(lambda: host.namespace_exists(p.namespace),
                               lambda: host.add_namespace(p.namespace))),
            Step('Loopback interface up',
                 lambda: host.link_up('lo', p.namespace)),
            Step(f'Veth pair {p.veth_host}/{p.veth_ns}',
                 create_unless(lambda: host.link_exists(p.veth_host),
                               lambda: host.add_veth(p.veth_host, p.veth_ns, p.namespace))),
            Step(f'Address {p.ip_host} on {p.veth_host}',
                 lambda: host.add_address(p.veth_host, p.ip_host)),
            Step(f'Link {p.veth_host} up',
                 lambda: host.link_up(p.veth_host)),
            Step(f'Address {p.ip_ns} on {p.veth_ns}',
                 lambda: host.add_address(p.veth_ns, p.ip_ns, p.namespace)),
            Step(f'Link {p.veth_ns} up',
                 lambda: host.link_up(p.veth_ns, p.namespace)),
            Step(f'Default route via {p.gateway}',
                 lambda: host.add_default_route(p.gateway, p.namespace)),
            Step(f'Routing rule ({p.policy_rule})',
                 create_unless(lambda: host.rule_exists(p.policy_rule),
                               lambda: host.add_rule(p.policy_rule))),
            self._add_filter_step('NAT rule', p.nat_rule),
            self._add_filter_step('FORWARD established rule', p.forward_established_rule),
            self._add_filter_step('FORWARD source rule', p.forward_source_rule),
            Step(f'DNS configuration {host.resolver_dir(p.namespace)}',
                 lambda: host.install_resolver(p.namespace, p.resolv_source),
                 warn_on_failure='Could not copy resolv.conf, DNS might not work in namespace'),
        ]

    def cleanup_steps(self) -> List[Step]:
        ''' reverse of setup_steps, minus the shared ESTABLISHED,RELATED rule '''
        p = self.profile
        host = self.host
        return [
            self._delete_filter_step('NAT rule', p.nat_rule),
            self._delete_filter_step('FORWARD source rule', p.forward_source_rule),
            Step(f'Routing rule ({p.policy_rule})',
                 remove_if(lambda: host.rule_exists(p.policy_rule),
                           lambda: host.delete_rule(p.policy_rule))),
            ## deleting one end of a veth pair removes its peer as well
            Step(f'Veth pair {p.veth_host}/{p.veth_ns}',
                 remove_if(lambda: host.link_exists(p.veth_host),
                           lambda: host.delete_link(p.veth_host))),
            Step(f"Namespace '{p.namespace}'",
                 remove_if(lambda: host.namespace_exists(p.namespace),
                           lambda: host.delete_namespace(p.namespace))),
            Step(f'DNS configuration {host.resolver_dir(p.namespace)}',
                 remove_if(lambda: host.resolver_dir_exists(p.namespace),
                           lambda: host.remove_resolver_dir(p.namespace))),
        ]

    def run(self, steps: List[Step]) -> List[Result]:
        ''' run steps in order, stop at the first failure that is not tolerated '''
        results = []
        for step in steps:
            logger.trace(f'step: {step.name}')
            result = step.action()
            outcome = result.outcome
            if outcome is Outcome.DUPLICATE:
                logger.warning(f'{step.name}: {outcome.value} ({result.reason})')
            elif outcome is Outcome.FAILED:
                if not step.warn_on_failure:
                    raise StepFailed(step.name, result.reason)
                logger.warning(f'{step.warn_on_failure}: {result.reason}')
            else:
                logger.info(f'{step.name}: {outcome.value}')
            results.append(result)
            continue
        return results

    def setup(self) -> List[Result]:
        p = self.profile
        logger.info(f"Setting up network namespace '{p.namespace}'...")
        results = self.run(self.setup_steps())
        logger.info('Network namespace setup complete!')
        logger.info(f'Test with: sudo ip netns exec {p.namespace} ping -c 1 {p.dns_server}')
        return results

    def cleanup(self) -> List[Result]:
        p = self.profile
        logger.info(f"Cleaning up network namespace '{p.namespace}'...")
        results = self.run(self.cleanup_steps())
        logger.info('Cleanup complete!')
        return results

    @staticmethod
    def _check(passed: bool, good: str, bad: str) -> bool:
        if passed:
            logger.info(good)
        else:
            logger.warning(bad)
        return passed

    def status(self) -> StatusReport:
        ''' read-only report; stops early when the namespace is missing '''
        p = self.profile
        host = self.host
        report = StatusReport(namespace=host.namespace_exists(p.namespace))
        if not report.namespace:
            logger.warning(f"Namespace '{p.namespace}' does not exist")
            return report
        logger.info(f"Namespace '{p.namespace}' exists")

        report.veth = self._check(host.link_exists(p.veth_host),
                                  'Veth pair exists and is configured',
                                  'Veth pair does not exist or is not properly configured')
        report.rule = self._check(host.rule_exists(p.policy_rule),
                                  'Routing rule exists',
                                  'Routing rule does not exist')
        report.nat = self._check(host.filter_rule_exists(p.nat_rule),
                                 'NAT rule exists',
                                 'NAT rule does not exist')

        logger.info('Testing connectivity from namespace...')
        report.connectivity = self._check(host.ping(p.namespace, p.dns_server, p.ping_timeout),
                                          'Connectivity test successful',
                                          f'Connectivity test to {p.dns_server} failed')
        return report
