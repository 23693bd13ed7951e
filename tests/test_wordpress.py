"""Tests for the WordPress installer."""
import hashlib
import io
import json
import tarfile
import pytest
from pathlib import Path
from unittest.mock import MagicMock, patch

from debiankit import wordpress
from debiankit.errors import MutationFailed, Unsupported, VerificationFailed
from debiankit.runner import StepOutcome, run_step
from debiankit.wordpress import WordPressOptions


SAMPLE_CONFIG = """<?php
define( 'DB_NAME', 'database_name_here' );
define( 'DB_USER', 'username_here' );
define( 'DB_PASSWORD', 'password_here' );
define( 'DB_HOST', 'localhost' );

define( 'AUTH_KEY',         'put your unique phrase here' );
define( 'SECURE_AUTH_KEY',  'put your unique phrase here' );
define( 'NONCE_SALT',       'put your unique phrase here' );

$table_prefix = 'wp_';
"""

SALTS = "define('AUTH_KEY', 'aaa');\ndefine('NONCE_SALT', 'zzz');\n"


def make_options(tmp_path, **kwargs):
    values = dict(install_path=str(tmp_path / "site"), db_name="blog", db_user="bloguser",
                  db_password="s3cr'et")
    values.update(kwargs)
    return WordPressOptions(**values)


class TestNormalizePrefix:
    """Tests for table prefix validation."""

    def test_appends_underscore(self):
        assert wordpress.normalize_prefix("blog") == "blog_"

    def test_keeps_existing_underscore(self):
        assert wordpress.normalize_prefix("wp_") == "wp_"

    @pytest.mark.parametrize("prefix", ["", "wp-", "wp prefix", "wp;DROP"])
    def test_rejects_invalid(self, prefix):
        with pytest.raises(ValueError):
            wordpress.normalize_prefix(prefix)


class TestRenderConfig:
    """Tests for wp-config.php generation."""

    def test_fills_settings(self, tmp_path):
        options = make_options(tmp_path, db_host="db.internal", table_prefix="blog_")

        rendered = wordpress.render_wp_config(SAMPLE_CONFIG, options, SALTS)

        assert "define( 'DB_NAME', 'blog' );" in rendered
        assert "define( 'DB_USER', 'bloguser' );" in rendered
        assert "define( 'DB_PASSWORD', 's3cr\\'et' );" in rendered
        assert "define( 'DB_HOST', 'db.internal' );" in rendered
        assert "$table_prefix = 'blog_';" in rendered

    def test_replaces_key_block(self, tmp_path):
        rendered = wordpress.render_wp_config(SAMPLE_CONFIG, make_options(tmp_path), SALTS)

        assert "put your unique phrase here" not in rendered
        assert "define('AUTH_KEY', 'aaa');\ndefine('NONCE_SALT', 'zzz');\n" in rendered

    def test_missing_key_block(self, tmp_path):
        with pytest.raises(VerificationFailed):
            wordpress.render_wp_config("<?php\n", make_options(tmp_path), SALTS)

    def test_password_hidden_from_repr(self, tmp_path):
        assert "s3cr" not in repr(make_options(tmp_path))


class TestRelease:
    """Tests for version lookup and download verification."""

    @patch('debiankit.wordpress.debian')
    def test_latest_version(self, mock_debian):
        mock_debian.fetch_text.return_value = json.dumps({"offers": [{"current": "6.6.2"}]})

        assert wordpress.latest_version() == "6.6.2"

    @patch('debiankit.wordpress.debian')
    def test_latest_version_bad_response(self, mock_debian):
        mock_debian.fetch_text.return_value = "<html>maintenance</html>"

        with pytest.raises(MutationFailed):
            wordpress.latest_version()

    @patch('debiankit.wordpress.debian')
    def test_checksum_match(self, mock_debian, tmp_path):
        payload = b"release bytes"
        mock_debian.download.side_effect = lambda url, dest: Path(dest).write_bytes(payload)
        mock_debian.fetch_text.return_value = f"{hashlib.sha1(payload).hexdigest()}  wordpress-6.6.2.tar.gz\n"

        tarball = wordpress.download_release("6.6.2", tmp_path)

        assert tarball.read_bytes() == payload
        mock_debian.download.assert_called_once_with("https://wordpress.org/wordpress-6.6.2.tar.gz", tarball)
        mock_debian.fetch_text.assert_called_once_with("https://wordpress.org/wordpress-6.6.2.tar.gz.sha1")

    @patch('debiankit.wordpress.debian')
    def test_checksum_mismatch_discards_archive(self, mock_debian, tmp_path):
        """Test a tampered archive is deleted and never unpacked."""
        mock_debian.download.side_effect = lambda url, dest: Path(dest).write_bytes(b"tampered")
        mock_debian.fetch_text.return_value = "0" * 40

        with pytest.raises(VerificationFailed, match="checksum mismatch"):
            wordpress.download_release("6.6.2", tmp_path)

        assert not (tmp_path / "wordpress.tar.gz").exists()

    @patch('debiankit.wordpress.debian')
    def test_empty_salts(self, mock_debian):
        mock_debian.fetch_text.return_value = "  \n"

        with pytest.raises(VerificationFailed):
            wordpress.fetch_salts()


class TestRequirements:
    """Tests for the installer's guards."""

    @patch('debiankit.wordpress.command_exists', side_effect=lambda cmd: cmd != "curl")
    def test_missing_curl(self, mock_exists):
        with pytest.raises(Unsupported, match="curl"):
            wordpress.check_requirements()

    @patch('debiankit.wordpress.debian')
    def test_unknown_owner(self, mock_debian):
        mock_debian.user_exists.return_value = False

        with pytest.raises(Unsupported, match="User nginx does not exist"):
            wordpress.validate_owner("nginx", "nginx")

    @patch('debiankit.wordpress.debian')
    def test_unknown_group(self, mock_debian):
        mock_debian.user_exists.return_value = True
        mock_debian.group_exists.return_value = False

        with pytest.raises(Unsupported, match="Group web does not exist"):
            wordpress.validate_owner("www-data", "web")


def build_release(path):
    """Write a minimal release tarball containing wordpress/wp-config-sample.php."""
    with tarfile.open(path, "w:gz") as archive:
        for name, content in (("wordpress/wp-config-sample.php", SAMPLE_CONFIG),
                              ("wordpress/index.php", "<?php\n")):
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return path


class TestInstallWordPress:
    """Tests for the full install flow."""

    @patch('debiankit.wordpress.apply_permissions')
    @patch('debiankit.wordpress.fetch_salts', return_value=SALTS)
    @patch('debiankit.wordpress.download_release')
    @patch('debiankit.wordpress.latest_version', return_value="6.6.2")
    def test_unpacks_and_configures(self, mock_version, mock_download, mock_salts,
                                    mock_permissions, tmp_path):
        mock_download.side_effect = lambda version, dest: build_release(Path(dest) / "wordpress.tar.gz")
        options = make_options(tmp_path)

        assert wordpress.install_wordpress(options) == "6.6.2"

        site = Path(options.install_path)
        assert (site / "index.php").exists()
        assert "'blog'" in (site / "wp-config.php").read_text()
        mock_permissions.assert_called_once_with(site, "www-data", "www-data")

    def test_apply_permissions(self, fake_sh, tmp_path):
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "file.php").write_text("")

        wordpress.apply_permissions(tmp_path, "www-data", "www-data")

        fake_sh.chown.assert_called_once_with("-R", "www-data:www-data", str(tmp_path))
        assert (tmp_path / "sub").stat().st_mode & 0o777 == 0o755
        assert (tmp_path / "sub" / "file.php").stat().st_mode & 0o777 == 0o644


@pytest.fixture
def requirements_met():
    with patch('debiankit.wordpress.check_requirements'), \
         patch('debiankit.wordpress.validate_owner'):
        yield


class TestWordPressStep:
    """Tests for the WordPress provisioning step."""

    def test_declined_confirmation_is_skipped(self, tmp_path, requirements_met):
        installer = MagicMock()
        step = wordpress.wordpress_step(make_options(tmp_path), installer=installer, confirm=lambda: False)

        result = run_step(step, sleep=MagicMock())

        assert result.outcome is StepOutcome.SKIPPED
        installer.assert_not_called()

    def test_existing_config_is_already_satisfied(self, tmp_path, requirements_met):
        options = make_options(tmp_path)
        Path(options.install_path).mkdir()
        (Path(options.install_path) / "wp-config.php").write_text("<?php\n")
        installer = MagicMock()

        result = run_step(wordpress.wordpress_step(options, installer=installer), sleep=MagicMock())

        assert result.outcome is StepOutcome.ALREADY_SATISFIED
        installer.assert_not_called()

    def test_installs_and_verifies(self, tmp_path, requirements_met):
        options = make_options(tmp_path)

        def installer(opts):
            Path(opts.install_path).mkdir()
            (Path(opts.install_path) / "wp-config.php").write_text("define( 'DB_NAME', 'blog' );\n")
            return "6.6.2"

        result = run_step(wordpress.wordpress_step(options, installer=installer, confirm=lambda: True),
                          sleep=MagicMock())

        assert result.outcome is StepOutcome.SUCCEEDED

    def test_checksum_failure_exhausts_retries(self, tmp_path, requirements_met):
        installer = MagicMock(side_effect=VerificationFailed("checksum mismatch"))
        sleep = MagicMock()

        result = run_step(wordpress.wordpress_step(make_options(tmp_path), installer=installer), sleep=sleep)

        assert result.outcome is StepOutcome.FAILED_AFTER_RETRIES
        assert installer.call_count == 2
        sleep.assert_called_once_with(3.0)

    def test_existing_config_skips_confirmation(self, tmp_path, requirements_met):
        """Test the operator is not asked to confirm when nothing will be installed."""
        options = make_options(tmp_path)
        Path(options.install_path).mkdir()
        (Path(options.install_path) / "wp-config.php").write_text("<?php\n")
        confirm = MagicMock(return_value=True)

        result = run_step(wordpress.wordpress_step(options, installer=MagicMock(), confirm=confirm),
                          sleep=MagicMock())

        assert result.outcome is StepOutcome.ALREADY_SATISFIED
        confirm.assert_not_called()

    def test_confirmation_asked_once_across_retries(self, tmp_path, requirements_met):
        confirm = MagicMock(return_value=True)
        installer = MagicMock(side_effect=MutationFailed("Download failed"))

        run_step(wordpress.wordpress_step(make_options(tmp_path), installer=installer, confirm=confirm),
                 sleep=MagicMock())

        assert installer.call_count == 2
        confirm.assert_called_once_with()

    def test_database_name_with_quote_verifies(self, tmp_path, requirements_met):
        """Test a database name that needs escaping still satisfies the postcondition."""
        options = make_options(tmp_path, db_name="o'brien\\blog")

        def installer(opts):
            Path(opts.install_path).mkdir()
            (Path(opts.install_path) / "wp-config.php").write_text(
                wordpress.render_wp_config(SAMPLE_CONFIG, opts, SALTS))
            return "6.6.2"

        installer_mock = MagicMock(side_effect=installer)
        result = run_step(wordpress.wordpress_step(options, installer=installer_mock), sleep=MagicMock())

        assert result.outcome is StepOutcome.SUCCEEDED
        assert installer_mock.call_count == 1
