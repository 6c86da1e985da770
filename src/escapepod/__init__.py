from .version import VERSION
from .profile import Profile
from .hostnet import HostNetwork, Outcome, Result
from .reconciler import Reconciler, StatusReport
