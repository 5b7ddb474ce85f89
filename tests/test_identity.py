from __future__ import annotations

import pytest

from med_vid.identity import Identity, IdentityContext, identity_from_headers


def test_identity_requires_user_id() -> None:
    with pytest.raises(ValueError):
        Identity(user_id="  ")


def test_label_falls_back() -> None:
    assert Identity("u1", display_name="Dr Grey").label == "Dr Grey"
    assert Identity("u1", email="grey@example.org").label == "grey@example.org"
    assert Identity("u1", display_name="  ").label == "Unknown Doctor"


def test_context_notifies_only_on_change() -> None:
    context = IdentityContext()
    seen: list[Identity | None] = []
    unsubscribe = context.on_identity_change(seen.append)
    doctor = Identity("u1", display_name="Dr Grey")

    context.set_identity(doctor)
    context.set_identity(Identity("u1", display_name="Dr Grey"))
    context.set_identity(None)
    unsubscribe()
    context.set_identity(doctor)

    assert seen == [doctor, None]
    assert context.current == doctor


def test_failing_handler_does_not_block_others() -> None:
    context = IdentityContext()
    seen: list[Identity | None] = []

    def broken(identity: Identity | None) -> None:
        raise RuntimeError("boom")

    context.on_identity_change(broken)
    context.on_identity_change(seen.append)
    context.set_identity(Identity("u2"))

    assert [identity.user_id for identity in seen] == ["u2"]


def test_identity_from_headers() -> None:
    assert identity_from_headers(None) is None
    assert identity_from_headers("  ") is None
    identity = identity_from_headers(" u3 ", "Dr House", "true")
    assert identity == Identity("u3", display_name="Dr House", is_admin=True)
    assert identity_from_headers("u4", admin_flag="no").is_admin is False
