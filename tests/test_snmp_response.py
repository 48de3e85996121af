import os
import subprocess

import pytest
from pysnmp.error import PySnmpError
from pysnmp.proto.rfc1902 import Integer32, OctetString

import check_netapp_health
from check_netapp_health import (
    INTEGER_TAG,
    STRING_TAG,
    ProbeCommandError,
    PysnmpTransport,
    QueryStatus,
    SnmpgetTransport,
    parse_snmp_response,
)


def test_string_payload_loses_quotes() -> None:
    outcome = parse_snmp_response('STRING: "721234000123"\n', STRING_TAG)

    assert outcome.status is QueryStatus.VALUE
    assert outcome.value == "721234000123"


def test_full_snmpget_line_is_understood() -> None:
    response = '.1.3.6.1.2.1.1.1.0 = STRING: "NetApp Release 9.7P5: Thu Jun 04 2020"'

    outcome = parse_snmp_response(response, STRING_TAG)

    assert outcome.value == "NetApp Release 9.7P5: Thu Jun 04 2020"


def test_integer_payload() -> None:
    outcome = parse_snmp_response("INTEGER: 3", INTEGER_TAG)

    assert outcome.status is QueryStatus.VALUE
    assert outcome.value == 3


def test_integer_with_enumeration_label() -> None:
    assert parse_snmp_response("INTEGER: nonCritical(4)", INTEGER_TAG).value == 4


def test_timeout_text_wins_over_tag() -> None:
    assert parse_snmp_response("Timeout: No Response from fas01", STRING_TAG).status is QueryStatus.TIMEOUT
    assert parse_snmp_response('STRING: "Timeout"', STRING_TAG).status is QueryStatus.TIMEOUT


@pytest.mark.parametrize("response", ["", "   \n", None, 'STRING: ""'])
def test_empty_responses(response) -> None:
    assert parse_snmp_response(response, STRING_TAG).status is QueryStatus.EMPTY


@pytest.mark.parametrize(
    "response, expected_tag",
    [
        ("INTEGER: 3", STRING_TAG),
        ('STRING: "abc"', INTEGER_TAG),
        ("INTEGER: abc", INTEGER_TAG),
        ("No Such Object available on this agent at this OID", STRING_TAG),
        ("Error in packet.\nReason: (noSuchName) There is no such variable name in this MIB.", STRING_TAG),
    ],
)
def test_malformed_responses(response, expected_tag) -> None:
    assert parse_snmp_response(response, expected_tag).status is QueryStatus.MALFORMED


def test_snmpget_command_line(monkeypatch) -> None:
    calls = []

    def fake_run(command, **kwargs):
        calls.append((command, kwargs))
        return subprocess.CompletedProcess(command, 0, stdout='STRING: "abc"\n')

    monkeypatch.setattr(subprocess, "run", fake_run)

    response = SnmpgetTransport()("fas01", "secret", "1.3.6.1.2.1.1.1.0", 5, 2)

    assert response == 'STRING: "abc"\n'
    command, kwargs = calls[0]
    assert command == ["snmpget", "-v", "1", "-c", "secret", "-t", "5", "-r", "2", "-Oev",
                       "fas01", "1.3.6.1.2.1.1.1.0"]
    assert kwargs["stderr"] is subprocess.STDOUT
    assert kwargs["timeout"] == 16


def test_snmpget_process_timeout_reads_as_snmp_timeout(monkeypatch) -> None:
    def fake_run(command, **kwargs):
        raise subprocess.TimeoutExpired(command, kwargs["timeout"])

    monkeypatch.setattr(subprocess, "run", fake_run)

    response = SnmpgetTransport()("fas01", "public", "1.3.6.1.2.1.1.1.0", 5, 2)

    assert parse_snmp_response(response, STRING_TAG).status is QueryStatus.TIMEOUT


def test_missing_snmpget_binary(monkeypatch) -> None:
    def fake_run(command, **kwargs):
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(ProbeCommandError, match="snmpget"):
        SnmpgetTransport()("fas01", "public", "1.3.6.1.2.1.1.1.0", 5, 2)


def test_pysnmp_values_render_like_snmpget() -> None:
    integer_line = PysnmpTransport.render(Integer32(3))
    string_line = PysnmpTransport.render(OctetString("721234000123"))

    assert parse_snmp_response(integer_line, INTEGER_TAG).value == 3
    assert parse_snmp_response(string_line, STRING_TAG).value == "721234000123"


def test_snmpget_latin1_output_is_decoded(tmp_path, monkeypatch) -> None:
    fake_snmpget = tmp_path / "snmpget"
    fake_snmpget.write_text("#!/bin/sh\nprintf 'STRING: \"Caf\\351 filer\"\\n'\n")
    fake_snmpget.chmod(0o755)
    monkeypatch.setenv("PATH", f"{tmp_path}{os.pathsep}{os.environ.get('PATH', '')}")

    response = SnmpgetTransport()("fas01", "public", "1.3.6.1.2.1.1.1.0", 5, 2)
    outcome = parse_snmp_response(response, STRING_TAG)

    assert outcome.status is QueryStatus.VALUE
    assert outcome.value == "Caf\ufffd filer"


def test_snmpget_decodes_with_replacement(monkeypatch) -> None:
    calls = []

    def fake_run(command, **kwargs):
        calls.append(kwargs)
        return subprocess.CompletedProcess(command, 0, stdout=b'STRING: "Caf\xe9"\n'.decode(
            kwargs["encoding"], kwargs["errors"]))

    monkeypatch.setattr(subprocess, "run", fake_run)

    response = SnmpgetTransport()("fas01", "public", "1.3.6.1.2.1.1.1.0", 5, 2)

    assert (calls[0]["encoding"], calls[0]["errors"]) == ("utf-8", "replace")
    assert parse_snmp_response(response, STRING_TAG).value == "Caf\ufffd"


def test_snmpget_not_executable(monkeypatch) -> None:
    def fake_run(command, **kwargs):
        raise PermissionError(13, "Permission denied", command[0])

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(ProbeCommandError, match="could not run snmpget"):
        SnmpgetTransport()("fas01", "public", "1.3.6.1.2.1.1.1.0", 5, 2)


class FakeSnmpEngine:

    closed = False

    def close_dispatcher(self):
        FakeSnmpEngine.closed = True


class FakeUdpTransportTarget:

    @classmethod
    async def create(cls, address, timeout=1, retries=5):
        return (address, timeout, retries)


class FakeErrorStatus:

    def __init__(self, name):
        self.name = name

    def __bool__(self):
        return True

    def prettyPrint(self):
        return self.name


def _scripted_get_cmd(monkeypatch, result):
    calls = []

    async def fake_get_cmd(engine, auth, transport, context, *var_binds):
        calls.append((auth, transport))
        if isinstance(result, Exception):
            raise result
        return result

    FakeSnmpEngine.closed = False
    monkeypatch.setattr(check_netapp_health, "get_cmd", fake_get_cmd)
    monkeypatch.setattr(check_netapp_health, "SnmpEngine", FakeSnmpEngine)
    monkeypatch.setattr(check_netapp_health, "UdpTransportTarget", FakeUdpTransportTarget)
    return calls


def test_pysnmp_integer_value(monkeypatch) -> None:
    calls = _scripted_get_cmd(monkeypatch, (None, 0, 0, [("1.3.6.1.4.1.789.1.2.2.4.0", Integer32(3))]))

    response = PysnmpTransport()("fas01", "public", "1.3.6.1.4.1.789.1.2.2.4.0", 5, 2)
    outcome = parse_snmp_response(response, INTEGER_TAG)

    assert outcome.status is QueryStatus.VALUE
    assert outcome.value == 3
    assert calls[0][1] == (("fas01", 161), 5, 2)
    assert FakeSnmpEngine.closed is True


def test_pysnmp_timeout_indication(monkeypatch) -> None:
    _scripted_get_cmd(monkeypatch, ("No SNMP response received before timeout", 0, 0, []))

    response = PysnmpTransport()("fas01", "public", "1.3.6.1.2.1.1.1.0", 5, 2)

    assert response == "Timeout: No Response from fas01"
    assert parse_snmp_response(response, STRING_TAG).status is QueryStatus.TIMEOUT


def test_pysnmp_error_status(monkeypatch) -> None:
    _scripted_get_cmd(monkeypatch, (None, FakeErrorStatus("noSuchName"), 1, []))

    response = PysnmpTransport()("fas01", "public", "1.3.6.1.4.1.789.1.1.9.0", 5, 2)

    assert response.startswith("Error in packet. Reason: noSuchName")
    assert parse_snmp_response(response, STRING_TAG).status is QueryStatus.MALFORMED


def test_pysnmp_library_error(monkeypatch) -> None:
    _scripted_get_cmd(monkeypatch, PySnmpError("Bad IPv4/UDP transport address fas01@161"))

    response = PysnmpTransport()("fas01", "public", "1.3.6.1.2.1.1.1.0", 5, 2)

    assert parse_snmp_response(response, STRING_TAG).status is QueryStatus.MALFORMED
    assert FakeSnmpEngine.closed is True
