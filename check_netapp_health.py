#!/usr/bin/python3
# -*- coding: utf-8 -*-
# ---------------------------------------------------------------
# COREX check NetApp health plugin for Icinga 2
# Copyright (C) 2019-2023, Gabor Borsos <bg@corex.bg>
#
# v1.0 built on 2024.01.01.
# usage: check_netapp_health.py --help
#
# For bugs and feature requests mailto bg@corex.bg
#
# ---------------------------------------------------------------
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# as published by the Free Software Foundation; either version 2
# of the License, or (at your option) any later version.
# ---------------------------------------------------------------

import sys

try:
    from dataclasses import dataclass
    from enum import Enum
    from typing import Optional
    import argparse
    import asyncio
    import logging
    import re
    import subprocess
    import textwrap

    from pysnmp.error import PySnmpError
    from pysnmp.hlapi.v3arch.asyncio import (
        CommunityData,
        ContextData,
        SnmpEngine,
        UdpTransportTarget,
        get_cmd,
    )
    from pysnmp.proto.rfc1902 import Integer32, OctetString
    from pysnmp.smi.rfc1902 import ObjectIdentity, ObjectType

except ImportError as e:
    print("Missing python module: {}".format(str(e)))
    sys.exit(255)


__version__ = "1.0"

PLUGIN_NAME = "check_netapp_health.py"
CHECK_NAME = "Netapp health"

DEFAULT_COMMUNITY = "public"
SNMP_TIMEOUT = 5
SNMP_RETRIES = 2
PING_WAIT = 1
UNKNOWN_VALUE = "unknown"

# SNMPv2-MIB and NETAPP-MIB (enterprise 789) scalars
OID_SYSTEM_DESCRIPTION = "1.3.6.1.2.1.1.1.0"
OID_SERIAL_NUMBER = "1.3.6.1.4.1.789.1.1.9.0"
OID_GLOBAL_STATUS = "1.3.6.1.4.1.789.1.2.2.4.0"
OID_ONTAP_VERSION = "1.3.6.1.4.1.789.1.1.2.0"

STRING_TAG = "STRING"
INTEGER_TAG = "INTEGER"

log = logging.getLogger("check_netapp_health")
log.addHandler(logging.NullHandler())



class CheckState(Enum):
    OK = 0
    WARNING = 1
    CRITICAL = 2
    UNKNOWN = 3


STATUS_WORDS = {
    CheckState.OK: "OK",
    CheckState.WARNING: "WARN",
    CheckState.CRITICAL: "CRITICAL",
    CheckState.UNKNOWN: "UNKNOWN",
}



class Reachability(Enum):
    UP = "up"
    DOWN_UNREACHABLE = "unreachable"
    DOWN_NAME_RESOLUTION_FAILED = "name resolution failed"
    DOWN_NO_ROUTE = "no route"


REACHABILITY_MESSAGES = {
    Reachability.DOWN_UNREACHABLE: "host {host} is unreachable (100% packet loss)",
    Reachability.DOWN_NAME_RESOLUTION_FAILED: "could not resolve hostname {host}",
    Reachability.DOWN_NO_ROUTE: "no route to host {host}",
}



class QueryStatus(Enum):
    VALUE = "value"
    TIMEOUT = "timeout"
    MALFORMED = "malformed response"
    EMPTY = "empty response"



class Severity(Enum):
    OTHER = "Other"
    UNKNOWN = "Unknown"
    OK = "OK"
    NON_CRITICAL = "NonCritical"
    CRITICAL = "Critical"
    NON_RECOVERABLE = "NonRecoverable"
    UNDETERMINED = "Undetermined"


# NETAPP-MIB::miscGlobalStatus
GLOBAL_STATUS_CODES = {
    1: Severity.OTHER,
    2: Severity.UNKNOWN,
    3: Severity.OK,
    4: Severity.NON_CRITICAL,
    5: Severity.CRITICAL,
    6: Severity.NON_RECOVERABLE,
}



@dataclass(frozen=True)
class Target:
    host: str
    community: str = DEFAULT_COMMUNITY



@dataclass(frozen=True)
class CheckConfig:
    target: Target
    verbose: bool = False
    timeout: int = SNMP_TIMEOUT
    retries: int = SNMP_RETRIES
    ping_wait: int = PING_WAIT
    transport: str = "snmpget"



@dataclass(frozen=True)
class SnmpQueryOutcome:
    status: QueryStatus
    value: object = None

    @property
    def ok(self):
        return self.status is QueryStatus.VALUE



@dataclass(frozen=True)
class Facts:
    system_description: Optional[str] = None
    serial_number: str = UNKNOWN_VALUE
    ontap_version: str = UNKNOWN_VALUE
    raw_status_code: Optional[int] = None



@dataclass(frozen=True)
class CheckResult:
    severity: Severity
    facts: Facts
    message: str
    exit_code: int



class CheckError(Exception):
    pass



class ProbeCommandError(CheckError):
    """A probe executable could not be started."""



class FatalCheckFailure(CheckError):
    """Aborts the run with a single line and the UNKNOWN exit state."""

    def __init__(self, status_word, message, state=CheckState.UNKNOWN):
        super().__init__(message)
        self.status_word = status_word
        self.message = message
        self.state = state


    def output_line(self):
        return f"{CHECK_NAME} {self.status_word} - {self.message}"



def parse_snmp_response(response, expected_tag):
    """Turn net-snmp style ``TAG: payload`` text into an SnmpQueryOutcome.

    Accepts both the value-only form (``STRING: "FAS8200"``) and the full
    form (``.1.3.6.1.2.1.1.1.0 = STRING: "FAS8200"``). Integer payloads may
    carry an enumeration label, ``ok(3)`` parses as 3.
    """
    text = (response or "").strip()
    if not text:
        return SnmpQueryOutcome(QueryStatus.EMPTY)

    # net-snmp prints "Timeout: No Response from <host>", whatever was asked
    if "Timeout" in text:
        return SnmpQueryOutcome(QueryStatus.TIMEOUT)

    for line in text.splitlines():
        if " = " in line:
            line = line.split(" = ", 1)[1]
        tag, separator, payload = line.partition(":")
        tag = tag.strip().upper()
        if not separator or tag not in (STRING_TAG, INTEGER_TAG):
            continue
        if tag != expected_tag:
            return SnmpQueryOutcome(QueryStatus.MALFORMED, line.strip())
        if tag == STRING_TAG:
            return parse_string_payload(payload)
        return parse_integer_payload(payload)

    return SnmpQueryOutcome(QueryStatus.MALFORMED, text)



def parse_string_payload(payload):
    value = payload.strip().strip('"').strip()
    if not value:
        return SnmpQueryOutcome(QueryStatus.EMPTY)
    return SnmpQueryOutcome(QueryStatus.VALUE, value)



def parse_integer_payload(payload):
    payload = payload.strip()
    labelled = re.fullmatch(r"\w[\w-]*\((-?\d+)\)", payload)
    if labelled:
        payload = labelled.group(1)
    try:
        return SnmpQueryOutcome(QueryStatus.VALUE, int(payload))
    except ValueError:
        return SnmpQueryOutcome(QueryStatus.MALFORMED, payload)



class PingRunner:

    command = "ping"

    def __call__(self, host, wait):
        ping_command = [self.command, "-c", "1", "-W", str(wait), host]
        log.debug("Running: %s", " ".join(ping_command))
        try:
            completed = subprocess.run(ping_command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                       encoding="utf-8", errors="replace", timeout=wait + 5)
        except FileNotFoundError:
            raise ProbeCommandError(f"{self.command} command not found, please install it!")
        except OSError as e:
            raise ProbeCommandError(f"could not run {self.command}: {e}")
        except subprocess.TimeoutExpired:
            return "1 packets transmitted, 0 received, 100% packet loss"
        return completed.stdout



class ReachabilityProber:

    name_resolution_signatures = (
        "name or service not known",
        "temporary failure in name resolution",
        "unknown host",
        "cannot resolve",
        "nodename nor servname",
    )
    no_route_signatures = (
        "no route to host",
        "network is unreachable",
    )

    def __init__(self, ping=None, wait=PING_WAIT):
        self.ping = ping or PingRunner()
        self.wait = wait


    def probe(self, host):
        output = self.ping(host, self.wait)
        log.debug("Ping output for %s: %r", host, output)
        reachability = self.classify(output)
        log.debug("Reachability of %s: %s", host, reachability.name)
        return reachability


    @classmethod
    def classify(cls, output):
        lowered = (output or "").lower()
        if any(signature in lowered for signature in cls.name_resolution_signatures):
            return Reachability.DOWN_NAME_RESOLUTION_FAILED
        if any(signature in lowered for signature in cls.no_route_signatures):
            return Reachability.DOWN_NO_ROUTE
        if re.search(r"(?<![\d.])100(\.0+)?% packet loss", lowered):
            return Reachability.DOWN_UNREACHABLE
        if "bytes from" in lowered:
            return Reachability.UP
        return Reachability.DOWN_UNREACHABLE



class SnmpgetTransport:
    """SNMPv1 GET through the net-snmp ``snmpget`` command."""

    command = "snmpget"

    def __call__(self, host, community, oid, timeout, retries):
        snmp_command = [self.command, "-v", "1", "-c", community, "-t", str(timeout), "-r", str(retries),
                        "-Oev", host, oid]
        log.debug("Running: %s", " ".join(snmp_command).replace(f"-c {community}", "-c ***"))
        try:
            completed = subprocess.run(snmp_command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                       encoding="utf-8", errors="replace", timeout=timeout * (retries + 1) + 1)
        except FileNotFoundError:
            raise ProbeCommandError(f"{self.command} command not found, please install net-snmp utilities!")
        except OSError as e:
            raise ProbeCommandError(f"could not run {self.command}: {e}")
        except subprocess.TimeoutExpired:
            return f"Timeout: No Response from {host}"
        return completed.stdout



class PysnmpTransport:
    """SNMPv1 GET through pysnmp, rendered the way snmpget prints it."""

    port = 161

    def __call__(self, host, community, oid, timeout, retries):
        try:
            return asyncio.run(self.get(host, community, oid, timeout, retries))
        except PySnmpError as e:
            log.debug("pysnmp error for %s: %s", host, e)
            return str(e)


    async def get(self, host, community, oid, timeout, retries):
        snmp_engine = SnmpEngine()
        try:
            error_indication, error_status, error_index, var_binds = await get_cmd(
                snmp_engine,
                CommunityData(community, mpModel=0),
                await UdpTransportTarget.create((host, self.port), timeout=timeout, retries=retries),
                ContextData(),
                ObjectType(ObjectIdentity(oid)),
            )
        finally:
            snmp_engine.close_dispatcher()

        if error_indication:
            if "timeout" in str(error_indication).lower():
                return f"Timeout: No Response from {host}"
            return str(error_indication)
        if error_status:
            return f"Error in packet. Reason: {error_status.prettyPrint()} (index {error_index})"
        return "\n".join(self.render(value) for _name, value in var_binds)


    @staticmethod
    def render(value):
        if isinstance(value, Integer32):
            return f"{INTEGER_TAG}: {int(value)}"
        if isinstance(value, OctetString):
            return f'{STRING_TAG}: "{value.prettyPrint()}"'
        return f"{value.__class__.__name__}: {value.prettyPrint()}"


TRANSPORTS = {
    "snmpget": SnmpgetTransport,
    "pysnmp": PysnmpTransport,
}



class SnmpGateway:

    def __init__(self, transport, timeout=SNMP_TIMEOUT, retries=SNMP_RETRIES):
        self.transport = transport
        self.timeout = timeout
        self.retries = retries


    def query(self, target, oid, expected_tag):
        response = self.transport(target.host, target.community, oid, self.timeout, self.retries)
        log.debug("Raw response for %s: %r", oid, response)
        outcome = parse_snmp_response(response, expected_tag)
        log.debug("Outcome for %s: %s %r", oid, outcome.status.name, outcome.value)
        return outcome



class FactCollector:

    def __init__(self, gateway):
        self.gateway = gateway


    def collect(self, target):
        description = self.gateway.query(target, OID_SYSTEM_DESCRIPTION, STRING_TAG)
        if not description.ok:
            raise FatalCheckFailure("CRITICAL", f"could not query host {target.host} via SNMP, "
                                                f"please check the community string!")

        serial = self.gateway.query(target, OID_SERIAL_NUMBER, STRING_TAG)
        if serial.status is QueryStatus.TIMEOUT:
            raise FatalCheckFailure("UNKNOWN", f"Unknown response, SNMP timeout while querying {target.host}, "
                                               f"please check the community string!")

        status = self.gateway.query(target, OID_GLOBAL_STATUS, INTEGER_TAG)
        version = self.gateway.query(target, OID_ONTAP_VERSION, STRING_TAG)

        return Facts(
            system_description=description.value,
            serial_number=serial.value if serial.ok else UNKNOWN_VALUE,
            ontap_version=version.value if version.ok else UNKNOWN_VALUE,
            raw_status_code=status.value if status.ok else None,
        )



def classify(raw_status_code):
    if isinstance(raw_status_code, bool) or not isinstance(raw_status_code, int):
        return Severity.UNDETERMINED
    return GLOBAL_STATUS_CODES.get(raw_status_code, Severity.UNDETERMINED)



def report(facts, severity):
    state = CheckState.OK if severity is Severity.OK else CheckState.WARNING
    message = (f"{CHECK_NAME} {STATUS_WORDS[state]} - GlobalStatus:{severity.value} "
               f"serial_number:{facts.serial_number} ONTAP_version:{facts.ontap_version}")
    return CheckResult(severity=severity, facts=facts, message=message, exit_code=state.value)



class CheckNetapp:

    def __init__(self, config, prober=None, gateway=None):
        self.pluginname = PLUGIN_NAME
        self.config = config
        self.prober = prober or ReachabilityProber(PingRunner(), wait=config.ping_wait)
        self.gateway = gateway or SnmpGateway(TRANSPORTS[config.transport](),
                                              timeout=config.timeout, retries=config.retries)
        self.collector = FactCollector(self.gateway)



    def run(self):
        target = self.config.target

        reachability = self.prober.probe(target.host)
        if reachability is not Reachability.UP:
            raise FatalCheckFailure("UNKNOWN", REACHABILITY_MESSAGES[reachability].format(host=target.host))

        facts = self.collector.collect(target)
        severity = classify(facts.raw_status_code)
        log.debug("GlobalStatus code %r classified as %s", facts.raw_status_code, severity.value)
        return report(facts, severity)



    def main(self):
        try:
            result = self.run()
        except FatalCheckFailure as e:
            self.output(e.output_line(), e.state)
        except CheckError as e:
            self.output(f"{CHECK_NAME} UNKNOWN - {e}", CheckState.UNKNOWN)
        self.output(result.message, CheckState(result.exit_code))



    @staticmethod
    def output(message, state):
        print(message)
        sys.exit(state.value)



class PluginArgumentParser(argparse.ArgumentParser):

    def error(self, message):
        print(f"{CHECK_NAME} UNKNOWN - {message}! Run {self.prog} --help for more information!")
        sys.exit(CheckState.UNKNOWN.value)



def parse_args(argv=None):
    parser = PluginArgumentParser(
        prog=PLUGIN_NAME,
        add_help=True,
        formatter_class=argparse.RawTextHelpFormatter,
        description=textwrap.dedent("""
        PLUGIN DESCRIPTION: NetApp ONTAP global health check plugin for ICINGA 2 via SNMP."""),
        epilog=textwrap.dedent(f"""
        Examples:
        {PLUGIN_NAME} --hostname mynetapp.mydomain.com
        {PLUGIN_NAME} --hostname mynetapp.mydomain.com --community monitoring
        {PLUGIN_NAME} --hostname mynetapp.mydomain.com --community monitoring --transport pysnmp --verbose
        """))

    check_options = parser.add_argument_group('SNMP arguments', 'hostname, community')
    check_options.add_argument('-H', '--hostname', dest='hostname', metavar='NETAPP HOSTNAME', type=str,
                               help='NetApp hostname or FQDN')
    check_options.add_argument('-C', '--community', dest='community', metavar='COMMUNITY', type=str,
                               default=DEFAULT_COMMUNITY, help=f'SNMP v1 read community, default: {DEFAULT_COMMUNITY}')

    check_procedure = parser.add_argument_group('check arguments', 'timeout, retries, ping-wait, transport')
    check_procedure.add_argument('-t', '--timeout', dest='timeout', type=int, default=SNMP_TIMEOUT,
                                 help=f'SNMP timeout in seconds per query, default: {SNMP_TIMEOUT}')
    check_procedure.add_argument('-r', '--retries', dest='retries', type=int, default=SNMP_RETRIES,
                                 help=f'SNMP retries per query, default: {SNMP_RETRIES}')
    check_procedure.add_argument('--ping-wait', dest='ping_wait', type=int, default=PING_WAIT,
                                 help=f'Seconds to wait for the ping reply, default: {PING_WAIT}')
    check_procedure.add_argument('--transport', dest='transport', choices=tuple(TRANSPORTS), default='snmpget',
                                 help='SNMP client to use: snmpget command or pysnmp library, default: snmpget')
    check_procedure.add_argument('-v', '--verbose', dest='verbose', action='store_true',
                                 help='Print debug messages to stderr')
    check_procedure.add_argument('-V', '--version', action='version', version=f'%(prog)s v{__version__}')

    options = parser.parse_args(argv)

    if not options.hostname:
        parser.error("missing --hostname argument")
    for option_name in ("timeout", "ping_wait"):
        if getattr(options, option_name) < 1:
            parser.error(f"--{option_name.replace('_', '-')} must be at least 1 second")
    if options.retries < 0:
        parser.error("--retries must not be negative")

    return CheckConfig(
        target=Target(host=options.hostname, community=options.community),
        verbose=options.verbose,
        timeout=options.timeout,
        retries=options.retries,
        ping_wait=options.ping_wait,
        transport=options.transport,
    )



def setup_logging(verbose):
    if not verbose:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("DEBUG %(message)s"))
    log.addHandler(handler)
    log.setLevel(logging.DEBUG)



def main(argv=None):
    config = parse_args(argv)
    setup_logging(config.verbose)
    CheckNetapp(config).main()



if __name__ == "__main__":
    main()
