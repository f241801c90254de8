"""Tests for configuration loading"""

import logging

import pytest

from strata.core.config import Config, get_config_path, load_config, setup_logging
from strata.core.config_protect import (
    ConfigProtect, config_protect_from_confs, load_config_protect_confs, protected_name,
)
from strata.core.database import InMemoryDatabase, SqliteDatabase
from strata.core.errors import ConfigError
from strata.core.package import Package
from strata.core.resolution import StrategyKind


class TestLoadConfig:
    """Tests for load_config()."""

    def test_missing_file_defaults(self, tmp_path):
        """A missing config file yields the defaults."""
        config = load_config(tmp_path / "missing.yaml")
        assert config.solver_type == "explainer"
        assert config.max_attempts == 9000
        assert config.rootfs == "/"
        assert config.concurrency >= 1

    def test_env_override(self, tmp_path, monkeypatch):
        """STRATA_CONFIG points to another file."""
        monkeypatch.setenv("STRATA_CONFIG", str(tmp_path / "alt.yaml"))
        assert get_config_path() == tmp_path / "alt.yaml"

    def test_full_file(self, tmp_path):
        """Every section of strata.yaml is parsed."""
        path = tmp_path / "strata.yaml"
        path.write_text(
            "general:\n"
            "  concurrency: 3\n"
            "  debug: true\n"
            "solver:\n"
            "  type: qlearning\n"
            "  rate: 0.5\n"
            "  discount: 0.9\n"
            "  max_attempts: 100\n"
            "  seed: 7\n"
            "system:\n"
            "  rootfs: /mnt/target\n"
            "  database_engine: memory\n"
            "  pkgs_cache_path: /tmp/cache\n"
            "repositories: /srv/main\n"
            "finalizer_envs:\n"
            "  LANG: C\n"
        )
        config = load_config(path)
        assert config.concurrency == 3
        assert config.debug is True
        assert config.rootfs == "/mnt/target"
        assert config.repositories == ["/srv/main"]
        assert config.finalizer_envs == {'LANG': 'C'}

        options = config.solver_options()
        assert options.type is StrategyKind.QLEARNING
        assert options.learn_rate == 0.5
        assert options.discount == 0.9
        assert options.max_attempts == 100
        assert options.seed == 7

    @pytest.mark.parametrize("content", [
        "solver: [1, 2]\n",
        "solver:\n  max_attempts: lots\n",
        "finalizer_envs: [a]\n",
        "- just\n- a list\n",
        "general: {concurrency: [\n",
    ])
    def test_invalid(self, tmp_path, content):
        """Malformed documents raise ConfigError."""
        path = tmp_path / "strata.yaml"
        path.write_text(content)
        with pytest.raises(ConfigError):
            load_config(path)

    def test_unknown_solver_type(self):
        """Unknown solver types are refused."""
        with pytest.raises(ConfigError):
            Config(solver_type="genetic").solver_options()

    @pytest.mark.parametrize("debug,level", [(True, logging.DEBUG), (False, logging.INFO)])
    def test_setup_logging(self, monkeypatch, debug, level):
        """The debug flag selects the root logging level."""
        seen = {}
        monkeypatch.setattr(logging, 'basicConfig', lambda **kwargs: seen.update(kwargs))
        setup_logging(debug=debug)
        assert seen['level'] == level
        assert '%(levelname)s' in seen['format']


class TestConfigObjects:
    """Tests for objects built from a Config."""

    def test_installer_options(self, tmp_path):
        """Installer options pick up config protect definitions."""
        confdir = tmp_path / "protect.d"
        confdir.mkdir()
        (confdir / "etc.yml").write_text("name: etc\ndirs:\n  - /etc\n")
        config = Config(concurrency=2, config_protect_confdir=[str(confdir)],
                        finalizer_envs={'A': 'b'})

        options = config.installer_options(force=True)
        assert options.concurrency == 2
        assert options.force is True
        assert options.finalizer_envs == {'A': 'b'}
        assert options.config_protect.protected("etc/passwd")

    def test_installer_options_unknown_key(self, tmp_path):
        """Unknown installer option overrides raise ConfigError."""
        config = Config(config_protect_confdir=[])
        with pytest.raises(ConfigError):
            config.installer_options(colour=True)

    def test_open_database(self, tmp_path):
        """The configured engine decides the database class."""
        assert isinstance(Config(database_engine="memory").open_database(), InMemoryDatabase)
        db = Config(database_path=tmp_path / "db" / "packages.db").open_database()
        assert isinstance(db, SqliteDatabase)
        db.close()

    def test_system(self, tmp_path):
        """system() opens the configured database on rootfs."""
        system = Config(database_engine="memory", rootfs=str(tmp_path)).system()
        assert system.target == str(tmp_path)
        assert not system.is_live_root


class TestConfigProtect:
    """Tests for config protect definitions."""

    def test_protected(self):
        """Paths below a protected directory are protected."""
        protect = ConfigProtect(["/etc/", "usr/share/conf"])
        assert protect.protected("etc/app.conf")
        assert protect.protected("/usr/share/conf/x")
        assert not protect.protected("etcetera/file")
        assert not ConfigProtect()

    def test_root_never_protected(self):
        """Protecting / is ignored."""
        assert not ConfigProtect(["/"])

    def test_for_package(self):
        """Package annotations extend the protected directories."""
        protect = ConfigProtect(["/etc"])
        app = Package(name="app", annotations={'config_protect': "/opt/app, /srv/app"})
        extended = protect.for_package(app)
        assert extended.protected("opt/app/x")
        assert extended.protected("srv/app/x")
        assert not protect.protected("opt/app/x")

    def test_protected_name(self, tmp_path):
        """The first free ._cfgNNNN_ name is used."""
        dest = tmp_path / "app.conf"
        assert protected_name(dest).name == "._cfg0001_app.conf"
        (tmp_path / "._cfg0001_app.conf").write_text("x")
        assert protected_name(dest).name == "._cfg0002_app.conf"

    def test_load_confs(self, tmp_path, caplog):
        """Definitions load from .yml and .yaml, bad files are skipped."""
        (tmp_path / "a.yml").write_text("name: base\ndirs: [/etc]\n")
        (tmp_path / "b.yaml").write_text("dirs: [/usr/share/app]\n")
        (tmp_path / "c.yml").write_text("- not a mapping\n")
        (tmp_path / "ignored.txt").write_text("dirs: [/var]\n")

        with caplog.at_level(logging.WARNING):
            confs = load_config_protect_confs([tmp_path, tmp_path / "missing"])
        assert [c.name for c in confs] == ["base", "b"]
        assert "not a mapping" in caplog.text

        protect = config_protect_from_confs(confs, extra_dirs=["/opt"])
        assert protect.dirs == ["/opt", "/etc", "/usr/share/app"]
