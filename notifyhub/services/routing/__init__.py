from notifyhub.services.routing.policy import (
    ChannelPolicy,
    PolicyProvider,
    QuietHours,
    StaticPolicyProvider,
    default_policy,
    policy_from_dict,
    validate_policy,
)
from notifyhub.services.routing.router import channel_gate_open, route

__all__ = [
    "ChannelPolicy",
    "PolicyProvider",
    "QuietHours",
    "StaticPolicyProvider",
    "default_policy",
    "policy_from_dict",
    "validate_policy",
    "channel_gate_open",
    "route",
]
