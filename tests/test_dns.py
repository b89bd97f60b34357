import ipaddress
import socket
import threading
import time

import dns.message
import dns.rdatatype
import dns.rrset
import pytest

from sdnnet.dns import (
    DNS,
    DNSValue,
    FakeDNS,
    FakeDNSReply,
    fixup_nameservers,
    ips_equal,
    normalize_ttl,
    read_resolver_config,
    remove_duplicate_ips,
)

IP4 = ipaddress.ip_address("10.11.12.13")
IP4_UPDATED = ipaddress.ip_address("10.11.12.14")
IP6 = ipaddress.ip_address("2600:5200::7800:1")
SOA = "example.com. 3600 IN SOA ns.example.com. root.example.com. 12345 600 600 600 600"


class _FakeServer:
    """A tiny UDP DNS server answering from scripted zone lines.

    An empty string as output means: do not reply at all.
    """

    def __init__(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.05)
        self.records = {}
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)

    @property
    def address(self):
        host, port = self.sock.getsockname()
        return f"{host}:{port}"

    def set_answer(self, name, output, rdtype=None):
        self.records[(name.rstrip(".").lower() + ".", rdtype)] = output

    def clear(self):
        self.records.clear()

    def start(self):
        self._thread.start()

    def stop(self):
        self._stop.set()
        self._thread.join()
        self.sock.close()

    def _serve(self):
        while not self._stop.is_set():
            try:
                data, addr = self.sock.recvfrom(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            query = dns.message.from_wire(data)
            question = query.question[0]
            qname = question.name.to_text().lower()
            output = self.records.get((qname, question.rdtype))
            if output is None:
                output = self.records.get((qname, None))
            if output == "":
                continue
            response = dns.message.make_response(query)
            for line in (output or "").split("\n"):
                if not line.strip():
                    continue
                tokens = line.split()
                response.answer.append(
                    dns.rrset.from_text(
                        tokens[0], int(tokens[1]), tokens[2], tokens[3], " ".join(tokens[4:])
                    )
                )
            self.sock.sendto(response.to_wire(), addr)


@pytest.fixture
def server():
    srv = _FakeServer()
    srv.start()
    yield srv
    srv.stop()


@pytest.fixture
def resolv_conf(tmp_path, server):
    path = tmp_path / "resolv.conf"
    path.write_text(
        f"\nnameserver {server.address}\n#nameserver 192.168.10.11\n\n"
        "options rotate timeout:1 attempts:1"
    )
    return path


def make_dns(resolv_conf, ipv4=True, ipv6=False):
    return DNS(resolv_conf, ipv4, ipv6, timeout=0.1)


@pytest.mark.parametrize(
    "nameservers, ipv4, ipv6, expected",
    [
        (
            ["1.2.3.4", "5.6.7.8:5353", "fd00::1234", "[fd00::5678]:5353"],
            True,
            False,
            ["1.2.3.4:53", "5.6.7.8:5353"],
        ),
        (
            ["1.2.3.4", "5.6.7.8:5353", "fd00::1234", "[fd00::5678]:5353"],
            False,
            True,
            ["[fd00::1234]:53", "[fd00::5678]:5353"],
        ),
        (["1.2.3.4", "5.6.7.8:5353"], False, True, ["1.2.3.4:53", "5.6.7.8:5353"]),
        (
            ["1.2.3.4", "5.6.7.8:5353", "fd00::1234", "[fd00::5678]:5353"],
            True,
            True,
            ["1.2.3.4:53", "5.6.7.8:5353", "[fd00::1234]:53", "[fd00::5678]:5353"],
        ),
    ],
)
def test_fixup_nameservers(nameservers, ipv4, ipv6, expected):
    assert fixup_nameservers(nameservers, "53", ipv4, ipv6) == expected


@pytest.mark.parametrize(
    "ttl, expected",
    [(2, 2), (27, 27), (29, 29), (30, 30), (31, 30), (1799, 30), (1800, 1800), (1801, 1800), (3600, 1800)],
)
def test_normalize_ttl(ttl, expected):
    assert normalize_ttl(ttl) == expected


def test_read_resolver_config(tmp_path):
    path = tmp_path / "resolv.conf"
    path.write_text("# comment\nnameserver 10.0.0.1\n;nameserver 10.0.0.2\nnameserver fd00::1\nsearch example.com\n")
    assert read_resolver_config(path) == (["10.0.0.1", "fd00::1"], "53")


def test_dns_requires_an_address_family(resolv_conf):
    with pytest.raises(ValueError, match="at least one"):
        DNS(resolv_conf, False, False)


def test_dns_requires_readable_config(tmp_path):
    with pytest.raises(ValueError, match="cannot initialize the resolver"):
        DNS(tmp_path / "missing.conf", True, False)


def test_nameservers_get_default_port(tmp_path):
    path = tmp_path / "resolv.conf"
    path.write_text("nameserver 10.0.0.1\n")
    assert DNS(path, True, False).nameservers == ["10.0.0.1:53"]


def test_ips_equal_ignores_order():
    a = [ipaddress.ip_address("1.1.1.1"), ipaddress.ip_address("2.2.2.2")]
    assert ips_equal(a, list(reversed(a)))
    assert not ips_equal(a, a[:1])
    assert not ips_equal(a[:1], [ipaddress.ip_address("3.3.3.3")])


def test_remove_duplicate_ips_sorts_by_text():
    ips = [IP6, IP4, IP4, ipaddress.ip_address("10.11.12.2")]
    assert remove_duplicate_ips(ips) == [IP4, ipaddress.ip_address("10.11.12.2"), IP6]


@pytest.mark.parametrize(
    "output, ips, ttl",
    [
        ("example.com. 600 IN A 10.11.12.13", [IP4], 600),
        ("example.com. 200 IN CNAME foo.example.com.\nfoo.example.com. 600 IN A 10.11.12.13", [IP4], 200),
        ("example.com. 0 IN A 10.11.12.13", [IP4], 30),
        ("example.com. 5 IN A 10.11.12.13", [IP4], 5),
    ],
)
def test_add_ipv4(server, resolv_conf, output, ips, ttl):
    server.set_answer("example.com", output)
    resolver = make_dns(resolv_conf)
    resolver.add("example.com")
    value = resolver.get("example.com")
    assert ips_equal(value.ips, ips)
    assert value.ttl == normalize_ttl(ttl)
    assert value.next_query_time is not None
    assert resolver.size() == 1


def test_add_with_no_response_fails(server, resolv_conf):
    server.set_answer("example.com", "")
    resolver = make_dns(resolv_conf)
    with pytest.raises(LookupError, match="IP address not found"):
        resolver.add("example.com")
    assert resolver.size() == 0
    assert resolver.get("example.com") == DNSValue()


def test_add_invalid_domain_fails(server, resolv_conf):
    resolver = make_dns(resolv_conf)
    with pytest.raises(LookupError):
        resolver.add("sads@#$.com")
    assert resolver.size() == 0


@pytest.mark.parametrize(
    "output, ips, ttl",
    [
        ("example.com. 600 IN AAAA 2600:5200::7800:1", [IP6], 600),
        ("example.com. 200 IN CNAME foo.example.com.\nfoo.example.com. 600 IN AAAA 2600:5200::7800:1", [IP6], 200),
    ],
)
def test_add_ipv6(server, resolv_conf, output, ips, ttl):
    server.set_answer("example.com", output)
    resolver = make_dns(resolv_conf, ipv4=False, ipv6=True)
    resolver.add("example.com")
    value = resolver.get("example.com")
    assert ips_equal(value.ips, ips)
    assert value.ttl == normalize_ttl(ttl)


def test_add_ipv6_with_only_a_record_fails(server, resolv_conf):
    server.set_answer("example.com", "example.com. 600 IN A 10.11.12.13")
    resolver = make_dns(resolv_conf, ipv4=False, ipv6=True)
    with pytest.raises(LookupError):
        resolver.add("example.com")
    assert resolver.size() == 0


@pytest.mark.parametrize(
    "v4, v6, ips, ttl",
    [
        ("example.com. 600 IN A 10.11.12.13", SOA, [IP4], 600),
        (SOA, "example.com. 600 IN AAAA 2600:5200::7800:1", [IP6], 600),
        ("example.com. 200 IN A 10.11.12.13", "example.com. 600 IN AAAA 2600:5200::7800:1", [IP4, IP6], 200),
        ("example.com. 600 IN A 10.11.12.13", "example.com. 200 IN AAAA 2600:5200::7800:1", [IP4, IP6], 200),
        ("example.com. 200 IN A 10.11.12.13", "", [IP4], 200),
        ("example.com. 20 IN A 10.11.12.13", "example.com. 7 IN AAAA 2600:5200::7800:1", [IP4, IP6], 7),
    ],
)
def test_add_dual_stack(server, resolv_conf, v4, v6, ips, ttl):
    server.set_answer("example.com", v4, dns.rdatatype.A)
    server.set_answer("example.com", v6, dns.rdatatype.AAAA)
    resolver = make_dns(resolv_conf, ipv4=True, ipv6=True)
    resolver.add("example.com")
    value = resolver.get("example.com")
    assert ips_equal(value.ips, ips)
    assert value.ttl == normalize_ttl(ttl)


def test_add_dual_stack_no_match(server, resolv_conf):
    server.set_answer("example.com", SOA, dns.rdatatype.A)
    server.set_answer("example.com", SOA, dns.rdatatype.AAAA)
    resolver = make_dns(resolv_conf, ipv4=True, ipv6=True)
    with pytest.raises(LookupError):
        resolver.add("example.com")
    assert resolver.size() == 0


@pytest.mark.parametrize(
    "add_output, add_ttl, update_output, update_ttl",
    [
        ("example.com. 600 IN A 10.11.12.13", 600, "example.com. 500 IN A 10.11.12.14", 500),
        ("example.com. 5 IN A 10.11.12.13", 5, "example.com. 0 IN A 10.11.12.14", 30),
    ],
)
def test_update(server, resolv_conf, add_output, add_ttl, update_output, update_ttl):
    server.set_answer("example.com", add_output)
    resolver = make_dns(resolv_conf)
    resolver.add("example.com")
    orig = resolver.get("example.com")

    server.set_answer("example.com", update_output)
    changed = resolver.update("example.com")
    updated = resolver.get("example.com")

    assert changed is True
    assert resolver.size() == 1
    assert ips_equal(orig.ips, [IP4])
    assert orig.ttl == normalize_ttl(add_ttl)
    assert ips_equal(updated.ips, [IP4_UPDATED])
    assert updated.ttl == normalize_ttl(update_ttl)
    assert updated.next_query_time >= orig.next_query_time


def test_update_min_ttl_moves_next_query_time(server, resolv_conf):
    server.set_answer("example.com", "example.com. 5 IN A 10.11.12.13")
    resolver = make_dns(resolv_conf)
    resolver.add("example.com")
    orig = resolver.get("example.com")
    server.set_answer("example.com", "example.com. 0 IN A 10.11.12.14")
    resolver.update("example.com")
    assert resolver.get("example.com").next_query_time > orig.next_query_time


def test_update_unchanged_reports_no_change(server, resolv_conf):
    server.set_answer("example.com", "example.com. 600 IN A 10.11.12.13")
    resolver = make_dns(resolv_conf)
    resolver.add("example.com")
    assert resolver.update("example.com") is False


def test_update_invalid_domain(server, resolv_conf):
    resolver = make_dns(resolv_conf)
    with pytest.raises(LookupError):
        resolver.add("sads@#$.com")
    with pytest.raises(LookupError):
        resolver.update("sads@#$.com")
    assert resolver.size() == 0


def test_update_failure_keeps_entry(server, resolv_conf):
    server.set_answer("example.com", "example.com. 5 IN A 10.11.12.13")
    resolver = make_dns(resolv_conf)
    resolver.add("example.com")
    server.set_answer("example.com", "")
    with pytest.raises(LookupError):
        resolver.update("example.com")
    assert ips_equal(resolver.get("example.com").ips, [IP4])


def test_next_query_time_and_set_updating(server, resolv_conf):
    server.set_answer("a.example.com", "a.example.com. 5 IN A 10.11.12.13")
    server.set_answer("b.example.com", "b.example.com. 20 IN A 10.11.12.14")
    resolver = make_dns(resolv_conf)
    assert resolver.get_next_query_time() is None

    before = time.time()
    resolver.add("a.example.com")
    resolver.add("b.example.com")

    when, name = resolver.get_next_query_time()
    assert name == "a.example.com"
    assert before + 5 <= when <= time.time() + 5

    resolver.set_updating("a.example.com")
    assert resolver.get_next_query_time()[1] == "b.example.com"

    resolver.update("a.example.com")
    assert resolver.get_next_query_time()[1] == "a.example.com"


def test_set_updating_unknown_name(resolv_conf):
    resolver = make_dns(resolv_conf)
    with pytest.raises(KeyError):
        resolver.set_updating("nowhere.example.com")


def test_delete(server, resolv_conf):
    server.set_answer("example.com", "example.com. 600 IN A 10.11.12.13")
    resolver = make_dns(resolv_conf)
    resolver.add("example.com")
    resolver.delete("example.com")
    assert resolver.size() == 0
    assert resolver.get_next_query_time() is None


def test_fake_dns_plays_replies_in_order():
    fake = FakeDNS(
        [
            FakeDNSReply(name="domain1.com", next_query_time=100.0),
            FakeDNSReply(name="domain2.com", next_query_time=200.0),
            FakeDNSReply(name="domain1.com", next_query_time=300.0),
        ]
    )
    assert fake.get_next_query_time() == (100.0, "domain1.com")
    assert fake.update("domain1.com") is True
    assert fake.get_next_query_time() == (200.0, "domain2.com")
    assert fake.update("domain1.com") is True
    assert fake.update("domain1.com") is False
    assert fake.update("other.com") is False
    assert fake.update("domain2.com") is True
    assert fake.get_next_query_time() is None


def test_fake_dns_tracks_nothing():
    fake = FakeDNS([FakeDNSReply(name="domain1.com")])
    fake.add("domain1.com")
    fake.set_updating("domain1.com")
    fake.delete("domain1.com")
    assert fake.size() == 0
    assert fake.get("domain1.com") == DNSValue()
    assert fake.get_next_query_time() == (0.0, "domain1.com")