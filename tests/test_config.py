from peerdrop.config import IceServer, Settings


def test_defaults():
    s = Settings()
    assert s.chunk_size == 65536
    assert s.max_buffered_amount == 262144
    assert s.backpressure_delay == 0.05
    assert s.room_ttl == 3600 and s.sweep_interval == 300
    assert [i.urls for i in s.ice_servers] == ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PEERDROP_CHUNK_SIZE", "1024")
    monkeypatch.setenv("PEERDROP_SIGNAL_URL", "ws://relay:9000/ws")
    monkeypatch.setenv("PEERDROP_ICE_SERVERS", '[{"urls": ["turn:t.example:3478"], "username": "u", "credential": "p"}]')
    s = Settings()
    assert s.chunk_size == 1024
    assert s.signal_url == "ws://relay:9000/ws"
    assert s.ice_servers == [IceServer(urls=["turn:t.example:3478"], username="u", credential="p")]


def test_rtc_configuration():
    config = Settings(ice_servers=[IceServer(urls="stun:s.example:3478")]).rtc_configuration()
    [server] = config.iceServers
    assert server.urls == "stun:s.example:3478"
    assert server.username is None
