"""
Tests for ssd init.
"""

import pytest

from ssd.config.settings import RootConfig
from ssd.exceptions import ConfigurationError
from ssd.scaffold import ScaffoldOptions, generate, validate, write_file


class TestGenerate:
    """Test the generated ssd.yaml."""

    def test_minimal(self):
        text = generate(ScaffoldOptions(server="myserver"))

        assert text.startswith("server: myserver\n\nservices:\n  app:\n")
        assert "    # domain: example.com" in text
        assert "    # port: 3000" in text

    def test_full(self):
        text = generate(
            ScaffoldOptions(
                server="myserver",
                stack="/stacks/blog",
                service="web",
                domain="blog.example.com",
                path="/app",
                port=3000,
            )
        )

        assert "Uncomment" not in text
        config = RootConfig.from_yaml(text)
        web = config.get_service("web")
        assert web.stack == "/stacks/blog"
        assert web.domains == ["blog.example.com"]
        assert web.path == "/app"
        assert web.port == 3000

    def test_generated_file_loads(self):
        config = RootConfig.from_yaml(generate(ScaffoldOptions(server="myserver")))

        assert config.get_service().name == "app"


class TestValidate:
    """Options rejected before anything is written."""

    @pytest.mark.parametrize(
        "options",
        [
            ScaffoldOptions(server="bad server"),
            ScaffoldOptions(server="s", service="-web"),
            ScaffoldOptions(server="s", stack="relative"),
            ScaffoldOptions(server="s", port=0),
            ScaffoldOptions(server="s", path="api"),
        ],
    )
    def test_invalid(self, options):
        with pytest.raises(ConfigurationError):
            validate(options)


class TestWriteFile:
    """Writing ssd.yaml to disk."""

    def test_writes_file(self, tmp_path):
        path = write_file(str(tmp_path), ScaffoldOptions(server="myserver"))

        assert path == tmp_path / "ssd.yaml"
        assert path.read_text().startswith("server: myserver")

    def test_refuses_to_overwrite(self, tmp_path):
        (tmp_path / "ssd.yaml").write_text("server: old\n")

        with pytest.raises(ConfigurationError, match="already exists"):
            write_file(str(tmp_path), ScaffoldOptions(server="myserver"))

        assert (tmp_path / "ssd.yaml").read_text() == "server: old\n"

    def test_force_overwrites(self, tmp_path):
        (tmp_path / "ssd.yaml").write_text("server: old\n")

        write_file(str(tmp_path), ScaffoldOptions(server="myserver", force=True))

        assert "myserver" in (tmp_path / "ssd.yaml").read_text()
