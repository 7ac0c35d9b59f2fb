import threading
from app.services.presence import PresenceTracker


class TestPresenceTracker:
    def test_connect_and_disconnect(self):
        presence = PresenceTracker()
        presence.connect(1, "socket-a")
        assert presence.is_online(1)
        assert presence.list_online() == {1}

        presence.disconnect(1)
        assert not presence.is_online(1)
        assert presence.list_online() == set()

    def test_last_connect_wins(self):
        presence = PresenceTracker()
        assert presence.connect(1, "socket-a") is None
        assert presence.connect(1, "socket-b") == "socket-a"
        assert presence.handle_for(1) == "socket-b"

    def test_disconnect_unknown_identity(self):
        assert PresenceTracker().disconnect(42) is None

    def test_concurrent_connects(self):
        presence = PresenceTracker()

        def worker(start):
            for identity in range(start, start + 100):
                presence.connect(identity, object())
                presence.is_online(identity)

        threads = [threading.Thread(target=worker, args=(n * 100,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(presence.list_online()) == 800
