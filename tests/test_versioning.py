"""
Tests for version comparison and filename version extraction.
"""

import pytest

from store.versioning import (
    compare_versions,
    extract_version,
    short_version,
    version_key,
)


@pytest.mark.unit
class TestCompareVersions:

    @pytest.mark.parametrize("a,b,expected", [
        ("1.10.0", "1.9.0", 1),
        ("1.9.0", "1.10.0", -1),
        ("2.0", "2.0.0", 0),
        ("8.4.15", "8.4.15", 0),
        ("17.6", "17.5.1", 1),
        ("1.2.3", "1.2", 1),
    ])
    def test_numeric_comparison(self, a, b, expected):
        assert compare_versions(a, b) == expected

    def test_non_numeric_component_counts_as_zero(self):
        assert compare_versions("1.x.1", "1.0.1") == 0

    def test_sort_descending(self):
        ordered = sorted(["1.9.0", "1.10.0", "1.2.3"], key=version_key, reverse=True)
        assert ordered == ["1.10.0", "1.9.0", "1.2.3"]


@pytest.mark.unit
class TestExtractVersion:

    @pytest.mark.parametrize("filename,app_id,expected", [
        ("nginx-1.28.1.zip", "nginx", "1.28.1"),
        ("httpd-2.4.65-250724-Win64-VS17.zip", "apache", "2.4.65"),
        ("php-8.3.28-nts-Win32-vs16-x64.zip", "php8.3", "8.3.28"),
        ("redis-windows-8.2.2.zip", "redis", "8.2.2"),
        ("mysql-8.4.7-winx64.zip", "mysql", "8.4.7"),
        ("mariadb-11.4.9-winx64.zip", "mariadb", "11.4.9"),
        ("postgresql-17.6-1-windows-x64-binaries.zip", "postgresql", "17.6"),
        ("phpMyAdmin-5.2.3-all-languages.zip", "phpmyadmin", "5.2.3"),
    ])
    def test_known_layouts(self, filename, app_id, expected):
        assert extract_version(filename, app_id) == expected

    def test_no_version(self):
        assert extract_version("readme.txt", "nginx") is None

    def test_short_version(self):
        assert short_version("8.2.30") == "8.2"
        assert short_version("8.3") == "8.3"
        assert short_version("eight") is None
