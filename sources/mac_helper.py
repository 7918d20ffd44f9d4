"""mac_helper.py

Utility class that groups together the small helper functions that turn an
external device address into a safe SQLite identifier.

Every table name that ends up inside an SQL statement is built and checked
here; nothing else in the project interpolates caller-supplied text into SQL.

Typical usage
-------------
>>> from mac_helper import MacHelper
>>> MacHelper.table_name_for("aa:bb:cc:dd:ee:ff")
'DEV_AA_BB_CC_DD_EE_FF'
>>> MacHelper.quote_identifier("DEV_AA_BB_CC_DD_EE_FF")
'"DEV_AA_BB_CC_DD_EE_FF"'
"""

import re

DEVICE_TABLE_PREFIX = "DEV_"
ENVIRONMENT_TABLE = "ENVIRONMENT_DATA"
METADATA_TABLE = "sensor_metadata"

# Separators that may appear between the octets of an address.
_SEPARATORS = re.compile(r"[:\-._\s]+")
_TOKEN = re.compile(r"^[A-Za-z0-9]+$")
_IDENTIFIER = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


class MacHelper:
    """
    Helper for key canonicalisation and table-name generation.

    A key is split on separators (``:``, ``-``, ``.``, ``_``, whitespace),
    each token must be alphanumeric, and the upper-cased tokens are joined
    with ``_``.  Two spellings of the same address therefore share a table,
    while two different addresses never do.
    """

    @staticmethod
    def canonical_key(key: str) -> str:
        """
        Return the canonical form of ``key``.

        Example
        -------
        >>> MacHelper.canonical_key("aa-bb-cc-dd-ee-ff")
        'AA_BB_CC_DD_EE_FF'
        """
        if not isinstance(key, str):
            raise ValueError(f"device key must be a string, got {type(key).__name__}")
        tokens = [t for t in _SEPARATORS.split(key.strip()) if t]
        if not tokens:
            raise ValueError(f"empty device key: {key!r}")
        for token in tokens:
            if not _TOKEN.match(token):
                raise ValueError(f"invalid character in device key: {key!r}")
        return "_".join(t.upper() for t in tokens)

    @classmethod
    def table_name_for(cls, key: str) -> str:
        """Pure, deterministic table name for ``key``; no I/O."""
        return DEVICE_TABLE_PREFIX + cls.canonical_key(key)

    @staticmethod
    def quote_identifier(name: str) -> str:
        """
        Validate ``name`` against the identifier whitelist and return it
        double-quoted, ready for DDL/SQL.  Raises ``ValueError`` otherwise.
        """
        if not isinstance(name, str) or not _IDENTIFIER.match(name):
            raise ValueError(f"refusing unsafe SQL identifier: {name!r}")
        return f'"{name}"'
