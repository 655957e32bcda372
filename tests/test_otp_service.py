from concurrent.futures import ThreadPoolExecutor

from services.otp_service import CodeStore, generate_code, verify_submitted_code


def test_generate_code_is_fixed_length_digits():
    for _ in range(500):
        code = generate_code(9)
        assert len(code) == 9
        assert code.isdigit()


def test_generate_code_keeps_leading_zeros():
    store = CodeStore(ttl_seconds=15, code_length=9, generator=lambda n: "003881204")

    code = store.issue("alice@example.com")

    assert code == "003881204"
    assert verify_submitted_code(store, "003881204").valid is True


def test_issue_then_validate_is_single_use(store):
    code = store.issue("alice@example.com")

    first = store.validate(code)
    second = store.validate(code)

    assert first.accepted is True
    assert first.requester == "alice@example.com"
    assert second.accepted is False
    assert second.reason == "invalid"
    assert code not in store


def test_validate_after_ttl_is_expired_and_removed(store, clock):
    code = store.issue("alice@example.com")
    clock.advance(16)

    result = store.validate(code)

    assert result.accepted is False
    assert result.reason == "expired"
    assert len(store) == 0
    assert store.validate(code).reason == "invalid"


def test_validate_exactly_at_ttl_is_still_accepted(store, clock):
    code = store.issue("alice@example.com")
    clock.advance(15)

    assert store.validate(code).accepted is True


def test_issue_without_requester_uses_placeholder(store):
    code = store.issue(None)

    [(entry, _)] = store.active()
    assert entry.code == code
    assert entry.requester == "unknown"


def test_issue_retries_until_code_is_unique(clock):
    candidates = iter(["111111111", "111111111", "111111111", "222222222"])
    store = CodeStore(
        ttl_seconds=15, code_length=9, clock=clock, generator=lambda n: next(candidates)
    )

    first = store.issue("a@example.com")
    second = store.issue("b@example.com")

    assert first == "111111111"
    assert second == "222222222"
    assert len(store) == 2


def test_sweep_is_idempotent(store, clock):
    store.issue("a@example.com")
    store.issue("b@example.com")
    clock.advance(10)
    fresh = store.issue("c@example.com")
    clock.advance(6)

    assert store.sweep() == 2
    assert store.sweep() == 0
    assert len(store) == 1
    assert fresh in store


def test_sweep_with_explicit_time(store, clock):
    store.issue("a@example.com")

    assert store.sweep(clock.now) == 0
    assert store.sweep(clock.now.replace(minute=1)) == 1


def test_active_lists_remaining_seconds(store, clock):
    store.issue("a@example.com")
    clock.advance(5)
    code = store.issue("b@example.com")
    clock.advance(11)

    active = store.active()

    assert [(entry.code, remaining) for entry, remaining in active] == [(code, 4)]
    assert store.remaining_seconds(code) == 4
    assert store.remaining_seconds("000000000") is None


def test_concurrent_issue_yields_distinct_entries(store):
    with ThreadPoolExecutor(max_workers=16) as pool:
        codes = list(pool.map(lambda i: store.issue(f"user{i}@example.com"), range(400)))

    assert len(set(codes)) == 400
    assert len(store) == 400


def test_concurrent_validate_accepts_only_once(store):
    code = store.issue("alice@example.com")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: store.validate(code), range(32)))

    assert sum(result.accepted for result in results) == 1
    assert all(result.reason == "invalid" for result in results if not result.accepted)


def test_validate_racing_sweep_has_single_outcome(store, clock):
    code = store.issue("alice@example.com")
    clock.advance(20)

    with ThreadPoolExecutor(max_workers=2) as pool:
        swept = pool.submit(store.sweep)
        checked = pool.submit(store.validate, code)

    result = checked.result()
    assert result.accepted is False
    assert (swept.result(), result.reason) in [(1, "invalid"), (0, "expired")]


def test_wrong_length_is_rejected_without_touching_store(store):
    code = store.issue("alice@example.com")

    check = verify_submitted_code(store, "12345")

    assert check.valid is False
    assert check.reason == "format"
    assert check.message == "Code must be exactly 9 digits."
    assert len(store) == 1
    assert code in store


def test_verify_submitted_code_messages(store, clock):
    granted = store.issue("alice@example.com")
    expired = store.issue("bob@example.com")

    assert verify_submitted_code(store, f"  {granted} ").message == "ACCESS GRANTED"
    assert verify_submitted_code(store, granted).message == "Invalid code."

    clock.advance(20)
    check = verify_submitted_code(store, expired)
    assert check.reason == "expired"
    assert check.message == "Code expired. Request a new one."


def test_verify_submitted_code_handles_missing_input(store):
    assert verify_submitted_code(store, None).reason == "format"


def test_overlong_and_blank_codes_are_rejected_without_touching_store(store):
    code = store.issue("alice@example.com")

    for submitted in ["1234567890", f"{code}0", "         ", ""]:
        check = verify_submitted_code(store, submitted)
        assert check.reason == "format"
        assert len(store) == 1

    assert code in store


def test_remaining_seconds_round_half_up(store, clock):
    code = store.issue("alice@example.com")
    clock.advance(2.5)

    [(_, remaining)] = store.active()

    assert remaining == 13
    assert store.remaining_seconds(code) == 13
