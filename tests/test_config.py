"""Tests for Settings configuration model."""

from pathlib import Path

from threadline.config import Settings


class TestGetAllowedUserIds:
    def test_parses_comma_separated(self):
        s = Settings(allowed_user_ids="123,456,789")
        assert s.get_allowed_user_ids() == {123, 456, 789}

    def test_handles_spaces(self):
        s = Settings(allowed_user_ids=" 123 , 456 ")
        assert s.get_allowed_user_ids() == {123, 456}

    def test_empty_string_returns_empty_set(self):
        s = Settings(allowed_user_ids="")
        assert s.get_allowed_user_ids() == set()

    def test_single_id(self):
        s = Settings(allowed_user_ids="42")
        assert s.get_allowed_user_ids() == {42}


class TestDefaults:
    def test_default_database_path(self):
        assert Settings().database_path == Path("data/threadline.db")

    def test_default_loop_cap(self):
        assert Settings().max_tool_iterations == 5

    def test_default_summary_threshold_and_batch(self):
        s = Settings()
        assert s.summary_threshold == 10
        assert s.summary_batch_size == 10

    def test_default_skills_ttl_is_one_hour(self):
        assert Settings().skills_cache_ttl_seconds == 3600

    def test_env_is_ignored_under_pytest(self, monkeypatch):
        monkeypatch.setenv("SUMMARY_THRESHOLD", "99")
        assert Settings().summary_threshold == 10

    def test_init_values_win(self):
        s = Settings(max_tool_iterations=2, skills_enabled=False)
        assert s.max_tool_iterations == 2
        assert s.skills_enabled is False
