import sqlite3

from arrhunt.state import StateStore


def test_arr_api_key_roundtrip_and_clear(tmp_path) -> None:
    store = StateStore(str(tmp_path / "arrhunt.db"))
    assert store.get_arr_api_key("lidarr", 1) is None

    store.set_arr_api_key("lidarr", 1, "super-secret")
    assert store.get_arr_api_key("lidarr", 1) == "super-secret"
    assert (tmp_path / "arrhunt.masterkey").exists()

    store.clear_arr_api_key("lidarr", 1)
    assert store.get_arr_api_key("lidarr", 1) is None


def test_arr_api_key_corrupt_token_returns_none(tmp_path) -> None:
    db_path = tmp_path / "arrhunt.db"
    store = StateStore(str(db_path))
    store.set_arr_api_key("sonarr", 2, "abc123")

    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "UPDATE arr_credentials SET api_key_enc = ? WHERE app_type = ? AND instance_id = ?",
            ("not-a-valid-fernet-token", "sonarr", 2),
        )

    assert store.get_arr_api_key("sonarr", 2) is None
