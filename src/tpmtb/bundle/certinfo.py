"""Rendering of certificate attributes as they appear in bundle metadata."""

import string
from datetime import datetime
from typing import List

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from .. import fingerprint as fp

_WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def format_timestamp(value: datetime) -> str:
    """Format as ``Mon Jan 02 15:04:05 2006`` regardless of locale."""
    return (
        f"{_WEEKDAYS[value.weekday()]} {_MONTHS[value.month - 1]} "
        f"{value.day:02d} {value.hour:02d}:{value.minute:02d}:{value.second:02d} {value.year}"
    )


def format_serial(serial: int) -> str:
    return f"{serial} (0x{serial:x})"


def der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


def encode_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


# Attribute types Go's crypto/x509 parses into named pkix.Name fields,
# listed in the order pkix.Name.ToRDNSequence emits them.
_LIST_FIELDS = (
    (NameOID.COUNTRY_NAME, "C"),
    (NameOID.STATE_OR_PROVINCE_NAME, "ST"),
    (NameOID.LOCALITY_NAME, "L"),
    (NameOID.STREET_ADDRESS, "STREET"),
    (NameOID.POSTAL_CODE, "POSTALCODE"),
    (NameOID.ORGANIZATION_NAME, "O"),
    (NameOID.ORGANIZATIONAL_UNIT_NAME, "OU"),
)
_SINGLE_FIELDS = (
    (NameOID.COMMON_NAME, "CN"),
    (NameOID.SERIAL_NUMBER, "SERIALNUMBER"),
)
_NAMED_OIDS = frozenset(oid for oid, _ in _LIST_FIELDS + _SINGLE_FIELDS)

_PRINTABLE = frozenset(string.ascii_letters + string.digits + " '()+,-./:=?")
_ESCAPED = frozenset(',+"\\<>;')

_TAG_UTF8_STRING = 0x0C
_TAG_PRINTABLE_STRING = 0x13


def _attribute_value(attr: x509.NameAttribute) -> str:
    value = attr.value
    return value if isinstance(value, str) else value.decode("utf-8", errors="replace")


def _escape(value: str) -> str:
    out = []
    last = len(value) - 1
    for i, c in enumerate(value):
        if c in _ESCAPED or (c == " " and i in (0, last)) or (c == "#" and i == 0):
            out.append("\\")
        out.append(c)
    return "".join(out)


def _der_length(n: int) -> bytes:
    if n < 0x80:
        return bytes([n])
    encoded = n.to_bytes((n.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(encoded)]) + encoded


def _der_string(value: str) -> bytes:
    """DER string as Go's asn1.Marshal encodes it: PrintableString when possible."""
    tag = _TAG_PRINTABLE_STRING if all(c in _PRINTABLE for c in value) else _TAG_UTF8_STRING
    body = value.encode("utf-8")
    return bytes([tag]) + _der_length(len(body)) + body


def format_name(name: x509.Name) -> str:
    """
    Render a distinguished name exactly like Go's ``pkix.Name.String``.

    Attributes with a short name (C, ST, L, STREET, POSTALCODE, O, OU,
    CN, SERIALNUMBER) are regrouped by type, with values of the same
    type joined by ``+``. CN and SERIALNUMBER keep only their last
    value. Any other attribute is rendered as ``oid=#<DER hex>`` and
    comes last. The sequence is printed most specific first.
    """
    attributes = [attr for rdn in name.rdns for attr in rdn]

    rdns: List[str] = []
    for attr in attributes:
        if attr.oid not in _NAMED_OIDS:
            rdns.append(f"{attr.oid.dotted_string}=#{_der_string(_attribute_value(attr)).hex()}")
    for oid, label in _LIST_FIELDS:
        values = [_attribute_value(a) for a in attributes if a.oid == oid]
        if values:
            rdns.append("+".join(f"{label}={_escape(v)}" for v in values))
    for oid, label in _SINGLE_FIELDS:
        values = [_attribute_value(a) for a in attributes if a.oid == oid]
        if values and values[-1]:
            rdns.append(f"{label}={_escape(values[-1])}")
    return ",".join(reversed(rdns))


def subject(cert: x509.Certificate) -> str:
    return format_name(cert.subject)


def issuer(cert: x509.Certificate) -> str:
    return format_name(cert.issuer)


def not_before(cert: x509.Certificate) -> str:
    return format_timestamp(cert.not_valid_before_utc)


def not_after(cert: x509.Certificate) -> str:
    return format_timestamp(cert.not_valid_after_utc)


def sha256_fingerprint(cert: x509.Certificate) -> str:
    return fp.new(der(cert), fp.SHA256)


def sha1_fingerprint(cert: x509.Certificate) -> str:
    return fp.new(der(cert), fp.SHA1)
