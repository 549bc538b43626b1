"""GeoIP lookup of alert source addresses (MaxMind GeoLite2 databases).

Three databases are opened once: ASN, Country and City.  Lookups are cached
per address, because the same handful of IPs tends to appear in thousands
of logon events; the cache is shared by all rule tasks and locked.
"""

import ipaddress
import threading
from dataclasses import dataclass
from pathlib import Path

import geoip2.database
import geoip2.errors

DEFAULT_FILES = ("GeoLite2-ASN.mmdb", "GeoLite2-Country.mmdb", "GeoLite2-City.mmdb")


class ResourceUnavailable(FileNotFoundError):
    """A backing file an optional feature needs is missing."""


@dataclass(frozen=True)
class GeoInfo:
    asn: str
    country: str
    city: str


class GeoIPSearch:

    def __init__(self, asn_reader, country_reader, city_reader):
        self.asn_reader = asn_reader
        self.country_reader = country_reader
        self.city_reader = city_reader
        self._cache: dict = {}
        self._lock = threading.Lock()

    @classmethod
    def open(cls, path: str | Path, filenames=DEFAULT_FILES) -> "GeoIPSearch":
        path = cls.check_exist_geo_ip_files(path, filenames)
        asn, country, city = (
            geoip2.database.Reader(str(path / name)) for name in filenames
        )
        return cls(asn, country, city)

    @staticmethod
    def check_exist_geo_ip_files(path, filenames) -> Path | None:
        """None when no directory was given, the directory when every file exists."""
        if path is None:
            return None
        path = Path(path)
        missing = [
            f"Cannot find the appropriate MaxMind GeoIP database files. "
            f"filepath: {path / name}"
            for name in filenames
            if not (path / name).exists()
        ]
        if missing:
            raise ResourceUnavailable("\n".join(missing))
        return path

    def convert_ip_to_geo(self, target_ip: str) -> GeoInfo:
        """Raises ValueError for a malformed address, AddressNotFoundError if unknown."""
        addr = ipaddress.ip_address(target_ip)
        with self._lock:
            cached = self._cache.get(addr)
        if cached is not None:
            return cached

        ip = str(addr)
        asn = self.asn_reader.asn(ip).autonomous_system_organization
        country = self.country_reader.country(ip).country.name
        city = self.city_reader.city(ip).city.name
        info = GeoInfo(asn or "-", country or "-", city or "-")
        with self._lock:
            self._cache[addr] = info
        return info

    def lookup(self, target_ip: str) -> GeoInfo | None:
        """Lenient lookup for alert enrichment: None for private or unknown IPs."""
        try:
            addr = ipaddress.ip_address(target_ip)
        except ValueError:
            return None
        if not addr.is_global:
            return None
        try:
            return self.convert_ip_to_geo(target_ip)
        except geoip2.errors.AddressNotFoundError:
            return None

    def close(self) -> None:
        for reader in (self.asn_reader, self.country_reader, self.city_reader):
            reader.close()
