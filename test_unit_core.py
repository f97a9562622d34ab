#!/usr/bin/env python3
"""
Unit Tests for Core Functions

This module contains unit tests for the core functionality of the decree crawler,
including configuration loading, API key parsing, URL building, year selection,
filter rule matching and job parameter merging.
"""

import os
import tempfile

import pytest
import yaml

from compactor import group_consecutive
from config import (
    load_config, save_config_to_yaml, parse_api_keys, load_api_keys,
    AppConfig, ConfigError, CrawlSettings, OCRConfig, SiteConfig,
    LatestParams, BackfillParams, PurgeParams,
)
from crawler import build_url, resolve_years, ScanOptions
from filters import build_matcher, is_nomination, ContentFilter, ProtectionRules
from models import CrawlAttempt, Document, FilterRule, NotFoundRange, ScanStats, STATUS_NOT_FOUND
from ocr import OCRError, OCROptions, is_quota_error
from utils import format_file_size, format_duration, unit_prefix


def make_rule(rule_id, rule_type, field, mode, pattern, active=True):
    return FilterRule(id=rule_id, rule_type=rule_type, field=field, mode=mode, pattern=pattern, active=active)


class TestConfigurationLoading:
    """Test configuration loading and validation"""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def _write(self, data):
        path = os.path.join(self.temp_dir, 'config.yaml')
        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f)
        return path

    def test_defaults_without_file(self, monkeypatch):
        monkeypatch.delenv('DATABASE_URL', raising=False)
        config = load_config()

        assert isinstance(config, AppConfig)
        assert config.settings.concurrency == 5
        assert config.settings.gap_limit == 100
        assert config.settings.timeout_ms == 10000
        assert config.settings.head_check is True
        assert config.settings.language == 'fre'
        assert config.ocr.api_key_env == 'OCR_API_KEY'
        assert config.database.url == 'sqlite:///decrets.db'

    def test_load_valid_yaml_config(self, monkeypatch):
        monkeypatch.delenv('DATABASE_URL', raising=False)
        path = self._write({
            'settings': {'concurrency': 8, 'gap_limit': 50, 'language': 'eng'},
            'ocr': {'engine': 1},
            'database': {'url': 'sqlite:///other.db'},
        })

        config = load_config(path)

        assert config.settings.concurrency == 8
        assert config.settings.gap_limit == 50
        assert config.settings.language == 'eng'
        assert config.settings.timeout_ms == 10000
        assert config.ocr.engine == 1
        assert config.database.url == 'sqlite:///other.db'

    def test_load_config_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config(os.path.join(self.temp_dir, 'missing.yaml'))

    def test_unknown_key_rejected(self):
        path = self._write({'settings': {'concurency': 3}})
        with pytest.raises(ValueError, match='concurency'):
            load_config(path)

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            load_config(self._write({'ocr': {'engine': 7}}))
        with pytest.raises(ValueError):
            load_config(self._write({'settings': {'concurrency': 0}}))
        with pytest.raises(ValueError):
            load_config(self._write({'site': {'url_template': 'https://{host}/doc/{year}'}}))

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, 'broken.yaml')
        with open(path, 'w', encoding='utf-8') as f:
            f.write("settings: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_config(path)

    def test_database_url_environment_override(self, monkeypatch):
        monkeypatch.setenv('DATABASE_URL', 'postgresql://user:pw@db/decrets')
        config = load_config(self._write({'database': {'url': 'sqlite:///file.db'}}))
        assert config.database.url == 'postgresql://user:pw@db/decrets'

    def test_save_config_to_yaml(self, monkeypatch):
        monkeypatch.delenv('DATABASE_URL', raising=False)
        config = AppConfig(settings=CrawlSettings(concurrency=3, gap_limit=42))
        path = os.path.join(self.temp_dir, 'saved.yaml')

        save_config_to_yaml(config, path)
        reloaded = load_config(path)

        assert reloaded.settings.concurrency == 3
        assert reloaded.settings.gap_limit == 42
        assert reloaded.site.host == config.site.host


class TestApiKeys:
    """Test OCR credential parsing"""

    def test_parse_api_keys_separators(self):
        assert parse_api_keys("k1;k2,k3") == ["k1", "k2", "k3"]
        assert parse_api_keys(" k1 ; ,, k2 ") == ["k1", "k2"]

    def test_parse_api_keys_empty(self):
        assert parse_api_keys(None) == []
        assert parse_api_keys("") == []
        assert parse_api_keys(" ;, ") == []

    def test_load_api_keys(self, monkeypatch):
        config = AppConfig(ocr=OCRConfig(api_key_env='DECREE_TEST_KEYS'))
        monkeypatch.setenv('DECREE_TEST_KEYS', 'abc;def')
        assert load_api_keys(config) == ['abc', 'def']

    def test_load_api_keys_missing(self, monkeypatch):
        config = AppConfig(ocr=OCRConfig(api_key_env='DECREE_TEST_KEYS'))
        monkeypatch.delenv('DECREE_TEST_KEYS', raising=False)
        with pytest.raises(ConfigError):
            load_api_keys(config)

    def test_load_api_keys_only_separators(self, monkeypatch):
        config = AppConfig(ocr=OCRConfig(api_key_env='DECREE_TEST_KEYS'))
        monkeypatch.setenv('DECREE_TEST_KEYS', ' ; , ')
        with pytest.raises(ConfigError):
            load_api_keys(config)


class TestAddressSpace:
    """Test URL construction and year selection"""

    def test_build_url(self):
        assert build_url(2024, 17) == "https://sgg.gouv.bj/doc/decret-2024-17/download"

    def test_build_url_custom_site(self):
        site = SiteConfig(host="example.org", url_template="http://{host}/d/{year}/{index}.pdf")
        assert build_url(2020, 3, site) == "http://example.org/d/2020/3.pdf"

    def test_resolve_years_range(self):
        assert resolve_years(2020, 2023) == [2020, 2021, 2022, 2023]

    def test_resolve_years_limit(self):
        assert resolve_years(2010, 2024, limit_years=2) == [2023, 2024]

    def test_resolve_years_empty(self):
        assert resolve_years(2025, 2024) == []

    def test_unit_prefix(self):
        assert unit_prefix(2024, 5) == "[2024-5]"


class TestScanOptions:
    """Test scan option construction from settings"""

    def test_from_settings(self):
        settings = CrawlSettings(concurrency=7, gap_limit=12, timeout_ms=3000, head_check=False, language='eng')
        options = ScanOptions.from_settings(settings, OCRConfig(engine=1))

        assert options.concurrency == 7
        assert options.gap_limit == 12
        assert options.timeout_ms == 3000
        assert options.head_check is False
        assert options.ocr.language == 'eng'
        assert options.ocr.engine == 1

    def test_overrides(self):
        options = ScanOptions.from_settings(CrawlSettings(), language='ara', start_index=10,
                                            end_index=20, gap_limit=4)
        assert options.ocr.language == 'ara'
        assert options.start_index == 10
        assert options.end_index == 20
        assert options.gap_limit == 4

    def test_unknown_override(self):
        with pytest.raises(TypeError):
            ScanOptions.from_settings(CrawlSettings(), bogus=1)

    def test_ocr_form_fields(self):
        fields = OCROptions(language='fre', engine=3, is_table=True).form_fields()
        assert fields['language'] == 'fre'
        assert fields['OCREngine'] == '3'
        assert fields['isTable'] == 'true'
        assert fields['isOverlayRequired'] == 'false'


class TestFilterMatching:
    """Test filter rule matchers and decisions"""

    def test_modes_case_insensitive(self):
        assert build_matcher('contains', 'Budget')("loi de BUDGET 2024")
        assert build_matcher('startsWith', 'décret')("Décret n°2024-1")
        assert build_matcher('endsWith', '.PDF')("file.pdf")
        assert build_matcher('regex', r'^arr[eê]t')("ARRÊTÉ ministériel")
        assert not build_matcher('contains', 'xyz')("abc")

    def test_invalid_regex_never_matches(self):
        matcher = build_matcher('regex', '([unclosed')
        assert matcher("([unclosed") is False

    def test_unknown_mode_never_matches(self):
        assert build_matcher('fuzzy', 'abc')("abc") is False

    def test_none_value(self):
        assert not build_matcher('contains', 'a')(None)

    def test_nomination_detection(self):
        assert is_nomination(None, "Décret portant nomination du directeur")
        assert is_nomination("Monsieur X est nommé", None)
        assert not is_nomination("Décret portant approbation", "budget")

    def test_nomination_always_excluded(self):
        decision = ContentFilter([]).evaluate(url="u", text="... sont nommés membres ...")
        assert decision.exclude
        assert decision.reason == "nomination"

    def test_exclude_rule_on_url(self):
        rules = [make_rule(1, 'exclude', 'url', 'contains', 'decret-2024-13')]
        content_filter = ContentFilter(rules)

        assert content_filter.evaluate(url="https://x/doc/decret-2024-13/download", text="ok").exclude
        assert not content_filter.evaluate(url="https://x/doc/decret-2024-14/download", text="ok").exclude

    def test_inactive_and_include_rules_do_not_exclude(self):
        rules = [
            make_rule(1, 'exclude', 'text', 'contains', 'budget', active=False),
            make_rule(2, 'include', 'text', 'contains', 'budget'),
        ]
        assert not ContentFilter(rules).evaluate(url="u", text="loi de budget").exclude

    def test_empty_field_skipped(self):
        rules = [make_rule(1, 'exclude', 'title', 'regex', '.*')]
        assert not ContentFilter(rules).evaluate(url="u", text="anything", title=None).exclude
        assert ContentFilter(rules).evaluate(url="u", text="anything", title="T").exclude

    def test_protection_rules_tag_and_category_only(self):
        rules = [
            make_rule(1, 'protect', 'tag', 'contains', 'keep'),
            make_rule(2, 'protect', 'category', 'startsWith', 'fin'),
            make_rule(3, 'protect', 'text', 'contains', 'anything'),
        ]
        protection = ProtectionRules(rules)

        def doc(tag=None, category=None):
            return Document(id=1, url="u", year=2024, index=1, text="anything", byte_size=1,
                            tag=tag, category=category)

        assert protection.is_protected(doc(tag="KEEP-ME"))
        assert protection.is_protected(doc(category="Finances"))
        assert not protection.is_protected(doc())


class TestOcrErrorClassification:
    """Test quota detection used for key rotation"""

    def test_quota_markers(self):
        assert is_quota_error(OCRError("OCR error: Quota exceeded"))
        assert is_quota_error(OCRError("OCR HTTP 429"))
        assert is_quota_error(OCRError("You may only perform 10 requests. Maximum OCR requests reached"))
        assert is_quota_error(Exception("Rate limit hit"))

    def test_other_errors(self):
        assert not is_quota_error(OCRError("OCR HTTP 500"))
        assert not is_quota_error(OCRError("OCR error: Unable to recognize the file type"))


class TestJobParams:
    """Test merging of stored job parameters over defaults"""

    def test_defaults(self):
        latest = LatestParams.merge_params(None)
        assert latest.batch == 3
        assert latest.gap_limit == 10
        assert latest.limit_per_year == 3
        assert latest.timeout_ms == 8000
        assert latest.quiet_runs == 0

        backfill = BackfillParams.merge_params({})
        assert backfill.years_count == 2
        assert backfill.need_quiet_runs == 4
        assert backfill.gap_limit == 20

        purge = PurgeParams.merge_params({})
        assert purge.max_bytes == 536870912
        assert purge.max_deletes_per_run == 100

    def test_stored_values_override_and_unknown_ignored(self):
        params = LatestParams.merge_params({'batch': 9, 'quiet_runs': 2, 'from_a_newer_version': True})
        assert params.batch == 9
        assert params.quiet_runs == 2
        assert not hasattr(params, 'from_a_newer_version')
        assert params.to_dict()['batch'] == 9


class TestHelpers:
    """Test grouping and formatting helpers"""

    def test_group_consecutive(self):
        attempts = [
            CrawlAttempt(id=i, url=f"u{i}", year=2024, index=idx, status=STATUS_NOT_FOUND)
            for i, idx in enumerate([12, 10, 11, 20, 15, 16], start=1)
        ]
        groups = group_consecutive(attempts)

        assert [(start, end) for start, end, _ in groups] == [(10, 12), (15, 16), (20, 20)]
        assert sorted(groups[0][2]) == [1, 2, 3]

    def test_range_contains(self):
        known = NotFoundRange(id=1, year=2024, start_index=5, end_index=8, count=4)
        assert known.contains(5) and known.contains(8)
        assert not known.contains(4) and not known.contains(9)

    def test_scan_stats_merge(self):
        total = ScanStats(attempted=2, downloaded=1, not_found=1)
        total.merge(ScanStats(attempted=3, errors=1, skipped=2, skipped_known_not_found=2))
        assert total.as_dict() == {
            'attempted': 5, 'downloaded': 1, 'not_found': 1, 'errors': 1,
            'skipped': 2, 'skipped_known_not_found': 2,
        }

    def test_format_file_size(self):
        assert format_file_size(0) == "0 B"
        assert format_file_size(1536) == "1.5 KB"

    def test_format_duration(self):
        assert format_duration(45) == "45.0s"
        assert format_duration(125) == "2m 5s"
