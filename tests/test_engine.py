import threading
from ipaddress import ip_address

from ipgate.core import Credential, Label, Policy, parse_networks
from ipgate.engine import AccessEngine
from ipgate.state import AccessState

ALICE = Credential("alice", "secret")
WRONG = Credential("alice", "nope")


def make_engine(**kwargs) -> AccessEngine:
    kwargs.setdefault("credentials", (ALICE,))
    kwargs.setdefault("max_attempts", 2)
    return AccessEngine(Policy(**kwargs))


def test_deny_range_wins_over_everything():
    engine = make_engine(
        deny_ranges=parse_networks("203.0.113.0/24"),
        allow_ranges=parse_networks("203.0.113.0/24"),
    )
    addr = ip_address("203.0.113.7")
    engine.state.allow_dynamic(addr)

    for creds in (None, ALICE, WRONG):
        decision = engine.decide(addr, creds)
        assert decision.allowed is False
        assert decision.reason == "in deny list"
        assert decision.matched == "203.0.113.0/24"

    # denial before the credential step never counts as a failed attempt
    assert engine.state.attempts(addr) == 0


def test_fixed_allow_needs_no_credentials():
    engine = make_engine(allow_ranges=parse_networks("198.51.100.0/24"))
    decision = engine.decide(ip_address("198.51.100.20"), None)
    assert decision.allowed is True
    assert decision.reason == "static allow"


def test_private_block_precedes_fixed_allow():
    engine = make_engine(deny_private=True, allow_ranges=parse_networks("127.0.0.1/32"))
    decision = engine.decide(ip_address("127.0.0.1"), ALICE)
    assert decision.allowed is False
    assert decision.reason == "private address blocked"


def test_private_addresses_pass_when_flag_disabled():
    engine = make_engine(allow_ranges=parse_networks("127.0.0.0/8"))
    assert engine.decide(ip_address("127.0.0.1"), None).allowed is True


def test_failed_attempts_lead_to_ban():
    engine = make_engine(max_attempts=2)
    addr = ip_address("203.0.113.7")

    results = []
    counts = []
    for _ in range(3):
        results.append(engine.decide(addr, WRONG))
        counts.append(engine.state.attempts(addr))

    assert [d.allowed for d in results] == [False, False, False]
    assert [d.reason for d in results] == ["no match", "no match", "banned"]
    assert counts == [1, 2, 2]

    decision = engine.decide(addr, ALICE)
    assert decision.allowed is False
    assert decision.reason == "banned"
    assert engine.state.attempts(addr) == 2
    assert engine.state.is_dynamic(addr) is False


def test_missing_credentials_count_as_failure():
    engine = make_engine()
    addr = ip_address("203.0.113.8")
    assert engine.decide(addr, None).reason == "no match"
    assert engine.state.attempts(addr) == 1


def test_auth_disabled_without_users():
    engine = make_engine(credentials=())
    addr = ip_address("203.0.113.9")
    for _ in range(5):
        decision = engine.decide(addr, ALICE)
        assert decision.allowed is False
        assert decision.reason == "auth disabled"
    assert engine.state.attempts(addr) == 0


def test_zero_threshold_bans_everyone():
    engine = make_engine(max_attempts=0)
    decision = engine.decide(ip_address("192.0.2.1"), ALICE)
    assert decision.reason == "banned"


def test_success_adds_address_until_reset():
    engine = make_engine()
    addr = ip_address("203.0.113.10")

    decision = engine.decide(addr, ALICE)
    assert decision.allowed is True
    assert decision.reason == "authenticated"

    follow_up = engine.decide(addr, None)
    assert follow_up.allowed is True
    assert follow_up.reason == "dynamic allow"

    engine.state.reset_dynamic()
    assert engine.decide(addr, None).reason == "no match"


def test_success_keeps_previous_failures():
    engine = make_engine(max_attempts=3)
    addr = ip_address("203.0.113.11")
    engine.decide(addr, WRONG)
    assert engine.decide(addr, ALICE).allowed is True
    assert engine.state.attempts(addr) == 1


def test_classify_follows_rule_order_without_side_effects():
    engine = make_engine(
        deny_private=True,
        deny_ranges=parse_networks("192.0.2.0/24"),
        allow_ranges=parse_networks("198.51.100.0/24"),
        max_attempts=1,
    )
    state = engine.state
    state.allow_dynamic(ip_address("203.0.113.5"))
    state.record_failure(ip_address("203.0.113.6"))

    assert engine.classify(ip_address("10.0.0.1")).label is Label.PRIVATE
    deny = engine.classify(ip_address("192.0.2.1"))
    assert deny.label is Label.DENY
    assert deny.matched == "192.0.2.0/24"
    assert engine.classify(ip_address("198.51.100.1")).label is Label.STATIC_ALLOW
    assert engine.classify(ip_address("203.0.113.5")).label is Label.DYNAMIC_ALLOW

    banned = engine.classify(ip_address("203.0.113.6"))
    assert banned.label is Label.BANNED
    assert banned.attempts == 1

    unknown = ip_address("203.0.113.99")
    first = engine.classify(unknown)
    assert first.label is Label.UNCLASSIFIED
    assert engine.classify(unknown) == first
    assert state.attempts(unknown) == 0
    assert state.is_dynamic(unknown) is False


def test_dynamic_allow_wins_over_ban():
    engine = make_engine(max_attempts=1)
    addr = ip_address("203.0.113.12")
    engine.state.record_failure(addr)
    engine.state.allow_dynamic(addr)
    assert engine.decide(addr, None).allowed is True
    assert engine.classify(addr).label is Label.DYNAMIC_ALLOW


def test_concurrent_failures_are_not_lost():
    engine = AccessEngine(Policy(credentials=(ALICE,), max_attempts=1000), AccessState())
    addr = ip_address("203.0.113.13")

    def hammer():
        for _ in range(50):
            engine.decide(addr, WRONG)

    threads = [threading.Thread(target=hammer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert engine.state.attempts(addr) == 400
