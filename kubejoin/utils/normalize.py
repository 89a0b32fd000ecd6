# kubejoin/utils/normalize.py
import re

from ..errors import InvalidNodeNameError

_DNS_LABEL = r"[a-z0-9]([-a-z0-9]*[a-z0-9])?"
_DNS_SUBDOMAIN = re.compile(rf"^{_DNS_LABEL}(\.{_DNS_LABEL})*$")
_VERSION = re.compile(r"^\d+\.\d+\.\d+([-+][0-9A-Za-z.+-]+)?$")


def normalize_version(version: str) -> str:
    """Strip a single leading 'v' from a version string.

    Idempotent: ``normalize_version("v1.28.0") == normalize_version("1.28.0") == "1.28.0"``.
    """
    value = (version or "").strip()
    if value[:1] in ("v", "V"):
        value = value[1:]
    if not _VERSION.match(value):
        raise ValueError(f"❌ Invalid version: {version!r} (expected X.Y.Z)")
    return value


def validate_node_name(name: str) -> str:
    """Return ``name`` if it is a usable node name, raise InvalidNodeNameError otherwise."""
    if not name or len(name) > 253 or not _DNS_SUBDOMAIN.match(name):
        raise InvalidNodeNameError(
            f"❌ Invalid node name {name!r}: use lower-case letters, digits, '-' and '.', "
            "starting and ending with an alphanumeric character",
            node=name,
        )
    return name


# Optional CLI entrypoint
if __name__ == "__main__":
    import sys
    if len(sys.argv) != 2:
        print("Usage: python -m kubejoin.utils.normalize <version>")
        sys.exit(1)
    print(normalize_version(sys.argv[1]))
