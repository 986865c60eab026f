"""Tests for SymbolLocator end to end."""
import os
import threading
import uuid

import pytest
import requests

from binary_builders import FakeSession, cab, fake_expand, make_msf_pdb, make_pe
from symbol_locator import SymbolLocator, ResolveStatus, pdb_index_path
from symbol_locator.config import SYMBOL_CACHE_ENV, SYMBOL_PATH_ENV

GUID = uuid.UUID("6f1ed2c4-9a3b-4e55-8d21-0c7f3b2a9e10")


def _locator(symbol_path, cache, session=None):
    return SymbolLocator(symbol_path=symbol_path, symbol_cache=str(cache),
                         decompressor=fake_expand, session=session or FakeSession())


def _write(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def test_concrete_scenario_local_mismatch_then_compressed_server(tmp_path):
    """Local copy has the wrong age; the server only has the compressed payload."""
    localdir = tmp_path / "localdir"
    _write(localdir / "foo.pdb", make_msf_pdb(GUID, age=1, dbi_age=1))
    cache = tmp_path / "cache"
    index_path = pdb_index_path("foo.pdb", GUID, 2)
    assert index_path == f"foo.pdb/{GUID.hex}2/foo.pdb"

    session = FakeSession({
        f"http://symserver/foo.pdb/{GUID.hex}2/foo.pd_": cab(make_msf_pdb(GUID, age=2, dbi_age=2)),
    })
    locator = _locator(f"{localdir};SRV*{cache}*http://symserver/", tmp_path / "default", session)

    result = locator.find_pdb("foo.pdb", GUID, 2)

    expected = cache / "foo.pdb" / f"{GUID.hex}2" / "foo.pdb"
    assert result.status is ResolveStatus.FOUND
    assert result.source == "server"
    assert result.path == str(expected)
    assert expected.exists()
    assert locator.stats['mismatches'] == 1

    # Memoized: no more network traffic
    calls = len(session.calls)
    again = locator.find_pdb("foo.pdb", GUID, 2)
    assert again.path == result.path
    assert again.source == "memo"
    assert len(session.calls) == calls


def test_local_directory_hit(tmp_path):
    localdir = tmp_path / "symbols"
    pdb = _write(localdir / "app.pdb", make_msf_pdb(GUID, age=3, dbi_age=3))
    locator = _locator(str(localdir), tmp_path / "cache")

    result = locator.find_pdb("app.pdb", GUID, 3)

    assert result
    assert result.path == str(pdb)
    assert result.source == "local"


def test_idempotent_with_populated_disk_cache(tmp_path):
    """A fresh locator over an already populated cache needs no network."""
    session = FakeSession({f"http://srv/app.pdb/{GUID.hex}1/app.pdb": make_msf_pdb(GUID, 1, 1)})
    first = _locator("SRV*http://srv", tmp_path / "cache", session)
    path = first.find_pdb("app.pdb", GUID, 1).path

    session2 = FakeSession()
    second = _locator("SRV*http://srv", tmp_path / "cache", session2)
    assert second.find_pdb("app.pdb", GUID, 1).path == path
    assert session2.calls == []


def test_negative_cache_suppresses_probes(tmp_path):
    session = FakeSession()
    locator = _locator(f"{tmp_path / 'empty'};SRV*http://srv", tmp_path / "cache", session)

    first = locator.find_pdb("missing.pdb", GUID, 1)
    assert first.status is ResolveStatus.NOT_FOUND
    assert not first
    probes = len(session.calls)
    assert probes == 3

    with pytest.MonkeyPatch.context() as mp:
        def fail(*args, **kwargs):
            raise AssertionError("search path probed again")
        mp.setattr(locator, "_search_directory", fail)
        mp.setattr(locator.retriever, "try_get_file_from_server", fail)
        second = locator.find_pdb("missing.pdb", GUID, 1)

    assert second.status is ResolveStatus.NOT_FOUND
    assert len(session.calls) == probes
    assert locator.stats['negative_hits'] == 1


def test_first_listed_element_wins(tmp_path):
    first_dir = tmp_path / "first"
    second_dir = tmp_path / "second"
    _write(first_dir / "app.pdb", make_msf_pdb(GUID, 1, 1))
    _write(second_dir / "app.pdb", make_msf_pdb(GUID, 1, 1))

    result = _locator(f"{first_dir};{second_dir}", tmp_path / "cache").find_pdb("app.pdb", GUID, 1)
    assert result.path == str(first_dir / "app.pdb")

    result = _locator(f"{second_dir};{first_dir}", tmp_path / "cache").find_pdb("app.pdb", GUID, 1)
    assert result.path == str(second_dir / "app.pdb")


def test_server_before_local_when_listed_first(tmp_path):
    _write(tmp_path / "local" / "app.pdb", make_msf_pdb(GUID, 1, 1))
    session = FakeSession({f"http://srv/app.pdb/{GUID.hex}1/app.pdb": make_msf_pdb(GUID, 1, 1)})
    locator = _locator(f"SRV*http://srv;{tmp_path / 'local'}", tmp_path / "cache", session)

    assert locator.find_pdb("app.pdb", GUID, 1).source == "server"


def test_pointer_redirection_through_locator(tmp_path):
    original = _write(tmp_path / "builds" / "app.pdb", make_msf_pdb(GUID, 5, 5))
    share = tmp_path / "share"
    _write(share / "app.pdb" / f"{GUID.hex}5" / "file.ptr", f"PATH:{original}".encode())
    cache = tmp_path / "cache"

    result = _locator(f"SRV*{cache}*{share}", tmp_path / "default").find_pdb("app.pdb", GUID, 5)

    assert result.path == str(cache / "app.pdb" / f"{GUID.hex}5" / "app.pdb")
    with open(result.path, 'rb') as f:
        assert f.read() == original.read_bytes()


def test_pointer_message_is_not_found(tmp_path):
    share = tmp_path / "share"
    _write(share / "app.pdb" / f"{GUID.hex}5" / "file.ptr", b"MSG: withdrawn")

    result = _locator(f"SRV*{share}", tmp_path / "cache").find_pdb("app.pdb", GUID, 5)
    assert result.status is ResolveStatus.NOT_FOUND


def test_default_cache_used_without_override(tmp_path):
    session = FakeSession({f"http://srv/app.pdb/{GUID.hex}1/app.pdb": make_msf_pdb(GUID, 1, 1)})
    locator = _locator("http://srv", tmp_path / "default", session)

    result = locator.find_pdb("app.pdb", GUID, 1)
    assert result.path == str(tmp_path / "default" / "app.pdb" / f"{GUID.hex}1" / "app.pdb")


def test_invalid_requests_are_not_cached(tmp_path):
    locator = _locator(str(tmp_path), tmp_path / "cache")

    assert locator.find_pdb("", GUID, 1).status is ResolveStatus.INVALID_REQUEST
    assert locator.find_pdb("a.pdb", "zzz", 1).status is ResolveStatus.INVALID_REQUEST
    assert locator.find_pdb("a.pdb", GUID, -1).status is ResolveStatus.INVALID_REQUEST
    assert locator.find_binary("", 1, 2).status is ResolveStatus.INVALID_REQUEST
    result = locator.find_pdb("C:\\dir\\", GUID, 1)
    assert result.status is ResolveStatus.INVALID_REQUEST
    assert result.error
    assert len(locator.cache) == 0
    assert locator.stats['invalid'] == 5


def test_values_wider_than_32_bits_are_invalid(tmp_path):
    session = FakeSession({
        f"http://srv/app.pdb/{GUID.hex}1/app.pdb": make_msf_pdb(GUID, 1, 1),
        "http://srv/app.dll/5e2f1c3a1000/app.dll": make_pe(0x5E2F1C3A, 0x1000),
    })
    locator = _locator("SRV*http://srv", tmp_path / "cache", session)

    assert locator.find_pdb("app.pdb", GUID, 2 ** 32 + 1).status is ResolveStatus.INVALID_REQUEST
    assert locator.find_binary("app.dll", 2 ** 32 + 0x5E2F1C3A, 0x1000).status is ResolveStatus.INVALID_REQUEST
    assert locator.find_binary("app.dll", 0x5E2F1C3A, 2 ** 32 + 0x1000).status is ResolveStatus.INVALID_REQUEST
    assert session.calls == []
    assert len(locator.cache) == 0

    assert locator.find_pdb("app.pdb", GUID, 1).source == "server"


def test_non_numeric_binary_properties_are_invalid(tmp_path):
    locator = _locator(str(tmp_path), tmp_path / "cache")

    result = locator.find_binary("app.dll", "not-a-number", 0x1000)
    assert result.status is ResolveStatus.INVALID_REQUEST
    assert "not-a-number" in result.error
    assert locator.find_binary("app.dll", 0x5E2F1C3A, None).status is ResolveStatus.INVALID_REQUEST
    assert locator.find_binary("app.dll", 0x5E2F1C3A, "0x1000").status is ResolveStatus.INVALID_REQUEST
    assert locator.stats["invalid"] == 3


def test_empty_symbol_path_is_a_miss(tmp_path):
    locator = SymbolLocator(symbol_path="", symbol_cache=str(tmp_path))
    assert locator.find_pdb("a.pdb", GUID, 1).status is ResolveStatus.NOT_FOUND


def test_full_pdb_path_validated_directly(tmp_path):
    pdb = _write(tmp_path / "build" / "app.pdb", make_msf_pdb(GUID, 2, 2))
    session = FakeSession()
    locator = _locator("SRV*http://srv", tmp_path / "cache", session)

    result = locator.find_pdb(str(pdb), GUID, 2)

    assert result.path == str(pdb)
    assert result.source == "direct"
    assert session.calls == []
    assert len(locator.cache) == 0


def test_full_pdb_path_mismatch_falls_back_to_search(tmp_path):
    stale = _write(tmp_path / "build" / "app.pdb", make_msf_pdb(GUID, 1, 1))
    good = _write(tmp_path / "symbols" / "app.pdb", make_msf_pdb(GUID, 2, 2))
    locator = _locator(str(tmp_path / "symbols"), tmp_path / "cache")

    assert locator.find_pdb(str(stale), GUID, 2).path == str(good)


def test_find_binary_on_server(tmp_path):
    image = make_pe(0x5E2F1C3A, 0x1F000)
    session = FakeSession({"http://srv/app.dll/5e2f1c3a1f000/app.dll": image})
    locator = _locator("SRV*http://srv", tmp_path / "cache", session)

    result = locator.find_binary(r"C:\Program Files\App\App.DLL", 0x5E2F1C3A, 0x1F000)

    assert result.source == "server"
    assert result.path == str(tmp_path / "cache" / "app.dll" / "5e2f1c3a1f000" / "app.dll")


def test_find_binary_key_is_case_insensitive(tmp_path):
    session = FakeSession({"http://srv/app.dll/101000/app.dll": make_pe(0x10, 0x1000)})
    locator = _locator("SRV*http://srv", tmp_path / "cache", session)

    first = locator.find_binary("APP.DLL", 0x10, 0x1000)
    second = locator.find_binary("app.dll", 0x10, 0x1000)

    assert second.path == first.path
    assert second.source == "memo"


def test_find_binary_direct_path(tmp_path):
    image = _write(tmp_path / "bin" / "app.dll", make_pe(0x10, 0x1000))
    session = FakeSession()
    locator = _locator("SRV*http://srv", tmp_path / "cache", session)

    assert locator.find_binary(str(image), 0x10, 0x1000).source == "direct"
    assert session.calls == []


def test_find_binary_direct_path_skips_properties_when_asked(tmp_path):
    image = _write(tmp_path / "bin" / "app.dll", make_pe(0x99, 0x1000))
    locator = _locator("", tmp_path / "cache")

    assert not locator.find_binary(str(image), 0x10, 0x1000, check_properties=True)
    assert locator.find_binary(str(image), 0x10, 0x1000, check_properties=False).path == str(image)


def test_find_binary_search_path_always_checks_properties(tmp_path):
    _write(tmp_path / "bin" / "app.dll", make_pe(0x99, 0x1000))
    locator = _locator(str(tmp_path / "bin"), tmp_path / "cache")

    result = locator.find_binary("elsewhere/app.dll", 0x10, 0x1000, check_properties=False)
    assert result.status is ResolveStatus.NOT_FOUND


def test_find_binary_rejects_mismatched_server_copy(tmp_path):
    session = FakeSession({"http://srv/app.dll/101000/app.dll": make_pe(0x11, 0x1000)})
    good = _write(tmp_path / "later" / "app.dll", make_pe(0x10, 0x1000))
    locator = _locator(f"SRV*http://srv;{tmp_path / 'later'}", tmp_path / "cache", session)

    result = locator.find_binary("app.dll", 0x10, 0x1000)
    assert result.path == str(good)
    assert locator.stats['mismatches'] == 1


def test_find_pdb_for_binary(tmp_path):
    image = _write(tmp_path / "bin" / "app.dll", make_pe(0x10, 0x1000, pdb_path=r"D:\build\app.pdb", guid=GUID, age=3))
    _write(tmp_path / "symbols" / "app.pdb", make_msf_pdb(GUID, 3, 3))
    locator = _locator(str(tmp_path / "symbols"), tmp_path / "cache")

    result = locator.find_pdb_for_binary(str(image))
    assert result.path == str(tmp_path / "symbols" / "app.pdb")

    no_debug = _write(tmp_path / "bin" / "plain.dll", make_pe(0x10, 0x1000))
    assert locator.find_pdb_for_binary(str(no_debug)).status is ResolveStatus.INVALID_REQUEST


def test_unreachable_server_is_not_fatal(tmp_path):
    session = FakeSession(error=requests.ConnectionError("no route"))
    _write(tmp_path / "fallback" / "app.pdb", make_msf_pdb(GUID, 1, 1))
    locator = _locator(f"SRV*http://down;{tmp_path / 'fallback'}", tmp_path / "cache", session)

    assert locator.find_pdb("app.pdb", GUID, 1).source == "local"


def test_concurrent_requests_agree(tmp_path):
    session = FakeSession({f"http://srv/app.pdb/{GUID.hex}1/app.pdb": make_msf_pdb(GUID, 1, 1)})
    locator = _locator("SRV*http://srv", tmp_path / "cache", session)
    results = []

    def worker():
        results.append(locator.find_pdb("app.pdb", GUID, 1).path)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 8
    assert len(set(results)) == 1
    assert session.calls.count(f"http://srv/app.pdb/{GUID.hex}1/app.pdb") == 1


def test_environment_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv(SYMBOL_PATH_ENV, f"{tmp_path};SRV*http://srv")
    monkeypatch.setenv(SYMBOL_CACHE_ENV, str(tmp_path / "envcache"))

    locator = SymbolLocator()

    assert locator.symbol_path == f"{tmp_path};SRV*http://srv"
    assert locator.symbol_cache == str(tmp_path / "envcache")
    assert locator.cache_dirs() == [str(tmp_path / "envcache")]


def test_symbol_path_can_be_changed(tmp_path):
    _write(tmp_path / "b" / "app.pdb", make_msf_pdb(GUID, 1, 1))
    locator = _locator(str(tmp_path / "a"), tmp_path / "cache")
    assert not locator.find_pdb("app.pdb", GUID, 1)

    # Known-missing results survive a path change for the locator's lifetime
    locator.symbol_path = str(tmp_path / "b")
    assert not locator.find_pdb("app.pdb", GUID, 1)
    assert SymbolLocator(symbol_path=str(tmp_path / "b"), symbol_cache=str(tmp_path)).find_pdb("app.pdb", GUID, 1)


def test_sweep_and_statistics(tmp_path):
    cache = tmp_path / "cache"
    stale = _write(cache / "x" / ".symtmp-abandoned", b"partial")
    os.utime(str(stale), (0, 0))
    locator = _locator("", cache)

    assert locator.sweep_stale_temp_files() == 1
    stats = locator.get_statistics()
    assert stats['cache_found'] == 0
    assert stats['resolved'] == 0
