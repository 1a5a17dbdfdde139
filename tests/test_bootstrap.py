import json
import os
import ssl
import threading
from unittest.mock import MagicMock

import pytest

from edgeactuator.bootstrap import ConnectBootstrap
from edgeactuator.catalog import EndpointCatalog
from edgeactuator.errors import (ConnectExhausted, DiscoveryExhausted, DiscoveryFailed,
                                 MalformedDiscoveryData, NoInformationPresent, ShutdownRequested)
from edgeactuator.session import SessionFactory

from fakes import PEM_A1, PEM_A2, PEM_A3, FakeSession, connectivity, discovery_payload

RAW = discovery_payload({"grp": ([connectivity("A", "10.0.0.1")], [PEM_A1])})


class RecordingFactory:
    """Session factory accepting only the (candidate id, anchor file name) pairs in `accept`.

    Pairs in `broken` fail to build, as a non-PEM anchor does in tls_set.
    """

    def __init__(self, accept=(), broken=()):
        self.accept = set(accept)
        self.broken = set(broken)
        self.attempts = []
        self.sessions = []

    def __call__(self, candidate, ca_path):
        name = ca_path.rsplit("/", 1)[-1]
        self.attempts.append((candidate.id, name))
        if (candidate.id, name) in self.broken:
            raise ssl.SSLError("[X509: NO_CERTIFICATE_OR_CRL_FOUND] no certificate or crl found")
        session = FakeSession(accept=(candidate.id, name) in self.accept)
        self.sessions.append(session)
        return session


def make_bootstrap(cfg, discover_effects, factory=None, stop_event=None):
    client = MagicMock()
    client.discover.side_effect = discover_effects
    return ConnectBootstrap(cfg, client, factory or RecordingFactory(), stop_event), client


def test_transient_failures_retry_until_success(cfg):
    bootstrap, client = make_bootstrap(cfg, [DiscoveryFailed("blip"), RAW])
    catalog = bootstrap.discover("actuator")
    assert client.discover.call_count == 2
    assert [c.id for c in catalog] == ["A"]
    client.discover.assert_called_with("actuator", cfg.discover_timeout)


def test_budget_exhaustion_stops_at_budget(cfg):
    bootstrap, client = make_bootstrap(cfg, [DiscoveryFailed("blip")] * 10)
    with pytest.raises(DiscoveryExhausted):
        bootstrap.discover("actuator")
    assert client.discover.call_count == cfg.discover_retry_count == 3


def test_default_budget_is_ten_attempts(cfg):
    cfg.discover_retry_count = 10
    bootstrap, client = make_bootstrap(cfg, [DiscoveryFailed("blip")] * 20)
    with pytest.raises(DiscoveryExhausted):
        bootstrap.discover("actuator")
    assert client.discover.call_count == 10


def test_no_information_short_circuits(cfg):
    bootstrap, client = make_bootstrap(cfg, [DiscoveryFailed("blip"), NoInformationPresent("none"), RAW])
    with pytest.raises(NoInformationPresent):
        bootstrap.discover("actuator")
    assert client.discover.call_count == 2


def test_malformed_result_is_not_retried(cfg):
    bootstrap, client = make_bootstrap(cfg, [{"nope": 1}, RAW])
    with pytest.raises(MalformedDiscoveryData):
        bootstrap.discover("actuator")
    assert client.discover.call_count == 1


def test_backoff_honours_shutdown(cfg):
    cfg.discover_backoff_secs = 30
    stop = threading.Event()
    stop.set()
    bootstrap, client = make_bootstrap(cfg, [DiscoveryFailed("blip"), RAW], stop_event=stop)
    with pytest.raises(ShutdownRequested):
        bootstrap.discover("actuator")
    assert client.discover.call_count == 1


def test_discovery_persists_document_and_anchors(cfg, tmp_path):
    raw = discovery_payload({"grp": ([connectivity("A", "h")], [PEM_A1, PEM_A2])})
    bootstrap, _ = make_bootstrap(cfg, [raw])
    bootstrap.discover("actuator")
    assert json.loads((tmp_path / "discovery_output.json").read_text()) == raw
    assert (tmp_path / "grp_root_ca1.pem").read_text() == PEM_A1
    assert (tmp_path / "grp_root_ca2.pem").read_text() == PEM_A2


def test_candidates_tried_in_id_order(cfg):
    raw = discovery_payload({"grp": ([connectivity("B", "b"), connectivity("A", "a"),
                                      connectivity("C", "c")], [PEM_A1])})
    factory = RecordingFactory()
    bootstrap, _ = make_bootstrap(cfg, [], factory)
    with pytest.raises(ConnectExhausted):
        bootstrap.connect(EndpointCatalog.build_from(raw))
    assert [cid for cid, _ in factory.attempts] == ["A", "B", "C"]


def test_first_success_wins_within_anchor_list(cfg):
    raw = discovery_payload({"grp": ([connectivity("A", "a"), connectivity("B", "b")],
                                     [PEM_A1, PEM_A2, PEM_A3])})
    factory = RecordingFactory(accept={("A", "grp_root_ca2.pem"), ("B", "grp_root_ca1.pem")})
    bootstrap, _ = make_bootstrap(cfg, [], factory)
    state = bootstrap.connect(EndpointCatalog.build_from(raw))
    assert factory.attempts == [("A", "grp_root_ca1.pem"), ("A", "grp_root_ca2.pem")]
    assert state.candidate.id == "A"
    assert state.anchor_index == 2
    assert state.ca_path.endswith("grp_root_ca2.pem")
    assert state.session is factory.sessions[1]


def test_exhausted_anchors_advance_to_next_candidate(cfg):
    raw = discovery_payload({"g1": ([connectivity("A", "a")], [PEM_A1, PEM_A2]),
                             "g2": ([connectivity("B", "b")], [PEM_A3])})
    factory = RecordingFactory(accept={("B", "g2_root_ca1.pem")})
    bootstrap, _ = make_bootstrap(cfg, [], factory)
    state = bootstrap.connect(EndpointCatalog.build_from(raw))
    assert factory.attempts == [("A", "g1_root_ca1.pem"), ("A", "g1_root_ca2.pem"), ("B", "g2_root_ca1.pem")]
    assert state.candidate.group_name == "g2"


def test_group_without_anchors_is_skipped(cfg):
    raw = discovery_payload({"g1": ([connectivity("A", "a")], []),
                             "g2": ([connectivity("B", "b")], [PEM_A1])})
    factory = RecordingFactory(accept={("B", "g2_root_ca1.pem")})
    bootstrap, _ = make_bootstrap(cfg, [], factory)
    assert bootstrap.connect(EndpointCatalog.build_from(raw)).candidate.id == "B"
    assert factory.attempts == [("B", "g2_root_ca1.pem")]


def test_run_discovers_then_connects(cfg):
    factory = RecordingFactory(accept={("A", "grp_root_ca1.pem")})
    bootstrap, _ = make_bootstrap(cfg, [RAW], factory)
    state = bootstrap.run("actuator")
    assert state.candidate.host_address == "10.0.0.1"
    state.close()
    assert state.session.disconnected


def test_unusable_anchor_advances_to_next_anchor(cfg):
    raw = discovery_payload({"grp": ([connectivity("A", "a")], ["not a pem", PEM_A2])})
    factory = RecordingFactory(accept={("A", "grp_root_ca2.pem")}, broken={("A", "grp_root_ca1.pem")})
    bootstrap, _ = make_bootstrap(cfg, [], factory)
    state = bootstrap.connect(EndpointCatalog.build_from(raw))
    assert factory.attempts == [("A", "grp_root_ca1.pem"), ("A", "grp_root_ca2.pem")]
    assert state.anchor_index == 2


def test_only_unusable_anchors_exhausts_connect(cfg):
    raw = discovery_payload({"grp": ([connectivity("A", "127.0.0.1")], ["not a pem", "still not a pem"])})
    catalog = EndpointCatalog.build_from(raw)
    catalog.write_trust_anchors(cfg.output_dir)
    bootstrap = ConnectBootstrap(cfg, None, SessionFactory(cfg))
    with pytest.raises(ConnectExhausted):
        bootstrap.connect(catalog)


def test_empty_output_dir_uses_working_directory(cfg, tmp_path, monkeypatch):
    workdir = tmp_path / "work"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    cfg.output_dir = ""
    factory = RecordingFactory(accept={("A", "grp_root_ca1.pem")})
    bootstrap, _ = make_bootstrap(cfg, [RAW], factory)
    state = bootstrap.run("actuator")
    assert state.ca_path == os.path.join(os.getcwd(), "grp_root_ca1.pem")
    assert (workdir / "grp_root_ca1.pem").read_text() == PEM_A1
    assert (workdir / "discovery_output.json").exists()
