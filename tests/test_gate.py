"""Tests for the whitelist gate."""

from newsletter_sync.gate import (
    admit,
    group_admitted_by_sender,
    is_whitelisted,
    normalize_domains,
    normalize_whitelist,
)
from newsletter_sync.models import Confidence


def test_admit_requires_exact_whitelisted_address(make_message):
    """Only exact addresses pass; same-domain senders do not."""
    candidates = [
        make_message("m1", "new@digest.io"),
        make_message("m2", "alerts@digest.io"),
        make_message("m3", "friend@example.com"),
    ]
    admitted = admit(candidates, ["New@Digest.io"], already_imported=[])
    assert [m.message_id for m in admitted] == ["m1"]


def test_admit_ignores_confidence(make_message):
    """A low-confidence message from a whitelisted sender is still admitted."""
    msg = make_message("m1", "friend@example.com")
    msg.confidence = Confidence.LOW
    msg.score = 0
    assert admit([msg], ["friend@example.com"], already_imported=set()) == [msg]


def test_admit_drops_already_imported_and_batch_duplicates(make_message):
    candidates = [
        make_message("msg-42", "new@digest.io"),
        make_message("msg-43", "new@digest.io"),
        make_message("msg-43", "new@digest.io"),
    ]
    admitted = admit(candidates, ["new@digest.io"], already_imported={"msg-42"})
    assert [m.message_id for m in admitted] == ["msg-43"]


def test_admit_preserves_order(make_message):
    candidates = [make_message(f"m{i}", "a@x.com" if i % 2 else "b@x.com") for i in range(6)]
    admitted = admit(candidates, ["a@x.com", "b@x.com"], already_imported=[])
    assert [m.message_id for m in admitted] == [f"m{i}" for i in range(6)]


def test_empty_whitelist_admits_nothing(make_message):
    assert admit([make_message("m1", "a@x.com")], [], already_imported=[]) == []


def test_normalize_whitelist():
    assert normalize_whitelist([" A@X.com ", "", "b@y.org", "a@x.com"]) == {"a@x.com", "b@y.org"}


def test_group_admitted_by_sender(make_message):
    admitted = [
        make_message("m1", "a@x.com"),
        make_message("m2", "b@x.com"),
        make_message("m3", "a@x.com"),
    ]
    groups = group_admitted_by_sender(admitted)
    assert list(groups) == ["a@x.com", "b@x.com"]
    assert [m.message_id for m in groups["a@x.com"]] == ["m1", "m3"]


def test_admit_whitelisted_domain(make_message):
    """A domain entry admits every address under that domain."""
    candidates = [
        make_message("m1", "new@digest.io"),
        make_message("m2", "alerts@digest.io"),
        make_message("m3", "someone@notdigest.io"),
        make_message("m4", "friend@example.com"),
    ]
    admitted = admit(candidates, [], already_imported=[], domains=["@Digest.io"])
    assert [m.message_id for m in admitted] == ["m1", "m2"]


def test_admit_combines_addresses_and_domains(make_message):
    candidates = [
        make_message("m1", "new@digest.io"),
        make_message("m2", "friend@example.com"),
        make_message("m3", "other@example.com"),
    ]
    admitted = admit(candidates, ["friend@example.com"], already_imported={"m1"}, domains=["digest.io"])
    assert [m.message_id for m in admitted] == ["m2"]


def test_is_whitelisted():
    assert is_whitelisted("New@Digest.io", {"new@digest.io"})
    assert not is_whitelisted("alerts@digest.io", {"new@digest.io"})
    assert is_whitelisted("alerts@digest.io", set(), {"digest.io"})
    assert not is_whitelisted("alerts@mail.digest.io", set(), {"digest.io"})


def test_normalize_domains():
    assert normalize_domains([" @Digest.IO", "", "digest.io", "x.org"]) == {"digest.io", "x.org"}
