'''
Subscription plans and the mapping from the commerce backend's entitlements to a plan.

The registry is a static table and the resolver is a pure function over it, neither touch the
network, the DB or any global state so both are safe to call from any thread.
'''

import collections.abc
import dataclasses
import enum

class SubscriptionPlan(enum.Enum):
    """
    Subscription tiers purchasable in the app. The value is the store product identifier which is
    also what gets persisted into a user's profile, existing values must not be changed.
    """
    Nil   = 'none'
    Room1 = 'com.zthreesolutions.tolerancetracker.room01'
    Room2 = 'com.zthreesolutions.tolerancetracker.room02'
    Room3 = 'com.zthreesolutions.tolerancetracker.room03'
    Room4 = 'com.zthreesolutions.tolerancetracker.room04'
    Room5 = 'com.zthreesolutions.tolerancetracker.room05'

@dataclasses.dataclass(frozen=True)
class PlanInfo:
    room_limit:   int = 0
    display_name: str = ''

@dataclasses.dataclass(frozen=True)
class ReconciliationResult:
    plan:       SubscriptionPlan = SubscriptionPlan.Nil
    room_limit: int              = 0

PLAN_TABLE: dict[SubscriptionPlan, PlanInfo] = {
    SubscriptionPlan.Nil:   PlanInfo(room_limit=0, display_name='No Subscription'),
    SubscriptionPlan.Room1: PlanInfo(room_limit=1, display_name='1 Room Plan'),
    SubscriptionPlan.Room2: PlanInfo(room_limit=2, display_name='2 Room Plan'),
    SubscriptionPlan.Room3: PlanInfo(room_limit=3, display_name='3 Room Plan'),
    SubscriptionPlan.Room4: PlanInfo(room_limit=4, display_name='4 Room Plan'),
    SubscriptionPlan.Room5: PlanInfo(room_limit=5, display_name='5 Room Plan'),
}

# Entitlement identifiers as configured on the commerce backend's dashboard, ordered from the
# lowest to the highest tier.
ENTITLEMENT_PRIORITY: list[tuple[str, SubscriptionPlan]] = [
    ('1_entitlement', SubscriptionPlan.Room1),
    ('2_entitlement', SubscriptionPlan.Room2),
    ('3_entitlement', SubscriptionPlan.Room3),
    ('4_entitlement', SubscriptionPlan.Room4),
    ('5_entitlement', SubscriptionPlan.Room5),
]

def lookup(identifier: str) -> SubscriptionPlan:
    result = SubscriptionPlan._value2member_map_.get(identifier, SubscriptionPlan.Nil)
    assert isinstance(result, SubscriptionPlan)
    return result

def room_limit_of(plan: SubscriptionPlan) -> int:
    result = PLAN_TABLE[plan].room_limit
    return result

def display_name_of(plan: SubscriptionPlan) -> str:
    result = PLAN_TABLE[plan].display_name
    return result

def room_limit_for_product(product_id: str) -> int:
    result = room_limit_of(lookup(product_id))
    return result

def plan_from_entitlement(entitlement: str) -> SubscriptionPlan:
    result = SubscriptionPlan.Nil
    for label, plan in ENTITLEMENT_PRIORITY:
        if label == entitlement:
            result = plan
            break
    return result

def resolve_entitlements(active: collections.abc.Iterable[str]) -> ReconciliationResult:
    """
    Resolve the set of active entitlements into the single plan the user is entitled to.

    Every active entitlement is checked so a user holding several entitlements at once
    (e.g. an upgrade that hasn't expired the old tier yet) always resolves to the highest room
    limit they have paid for. Unrecognised entitlements are ignored.
    """
    plan = SubscriptionPlan.Nil
    for entitlement in frozenset(active):
        candidate = plan_from_entitlement(entitlement)
        if room_limit_of(candidate) > room_limit_of(plan):
            plan = candidate

    result = ReconciliationResult(plan=plan, room_limit=room_limit_of(plan))
    return result
