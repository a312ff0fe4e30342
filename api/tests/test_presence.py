from matchchat.services.presence import PresenceRegistry


def test_user_stays_online_until_last_connection_closes():
    presence = PresenceRegistry()
    presence.mark_online(1, "phone")
    presence.mark_online(1, "laptop")

    presence.mark_offline(1, "phone")
    assert presence.is_online(1) is True

    presence.mark_offline(1, "laptop")
    assert presence.is_online(1) is False
    assert presence.list_online() == set()


def test_mark_offline_without_connection_drops_everything():
    presence = PresenceRegistry()
    presence.mark_online(1, "a")
    presence.mark_online(1, "b")
    presence.mark_online(2, "c")

    presence.mark_offline(1)
    assert presence.is_online(1) is False
    assert presence.list_online() == {2}


def test_unknown_users_and_connections_are_harmless():
    presence = PresenceRegistry()
    presence.mark_offline(5, "never-seen")
    presence.mark_offline(5)
    assert presence.is_online(5) is False


def test_separate_registries_do_not_share_state():
    first, second = PresenceRegistry(), PresenceRegistry()
    first.mark_online(1, "a")
    assert second.is_online(1) is False
