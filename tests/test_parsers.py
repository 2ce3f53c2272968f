"""
Tests for Terraform and YAML declaration parsers.
"""
import os

import pytest

from stackmap.errors import DeclarationError

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


class TestTerraformParser:
    def setup_method(self):
        from stackmap.parsers import terraform
        self.parser = terraform

    def _by_address(self):
        declarations = self.parser.parse_file(os.path.join(FIXTURES, "stack.tf"))
        return {d.address: d for d in declarations}

    def test_fixture_resource_count(self):
        declarations = self.parser.parse_file(os.path.join(FIXTURES, "stack.tf"))
        assert len(declarations) == 13

    def test_declaration_order_preserved(self):
        declarations = self.parser.parse_file(os.path.join(FIXTURES, "stack.tf"))
        assert declarations[0].address == "docker_network.proxy"
        assert declarations[-1].address == "docker_container.nextcloud"
        assert [d.index for d in declarations] == list(range(13))

    def test_source_format_is_terraform(self):
        declarations = self.parser.parse_file(os.path.join(FIXTURES, "stack.tf"))
        assert all(d.source_format == "terraform" for d in declarations)
        assert all(d.source_file.endswith("stack.tf") for d in declarations)

    def test_scalar_attributes(self):
        by_address = self._by_address()
        assert by_address["docker_volume.nextcloud_data"].attributes["name"] == "nextcloud-data"
        assert by_address["docker_image.traefik"].attributes["keep_locally"] is True
        assert by_address["random_password.nextcloud_db"].attributes["length"] == 32

    def test_interpolations_kept_as_expressions(self):
        nextcloud = self._by_address()["docker_container.nextcloud"]
        assert "docker_image.nextcloud.image_id" in nextcloud.attributes["image"]
        assert any("random_password.nextcloud_db.result" in e for e in nextcloud.attributes["env"])

    def test_repeated_blocks_become_lists(self):
        nextcloud = self._by_address()["docker_container.nextcloud"]
        networks = nextcloud.attributes["networks_advanced"]
        assert isinstance(networks, list)
        assert len(networks) == 2

    def test_single_block_unwrapped(self):
        traefik = self._by_address()["docker_container.traefik"]
        assert isinstance(traefik.attributes["ports"], dict)
        assert traefik.attributes["ports"]["external"] == 443

    def test_depends_on_extracted_not_an_attribute(self):
        nextcloud = self._by_address()["docker_container.nextcloud"]
        assert "depends_on" not in nextcloud.attributes
        assert len(nextcloud.depends_on) == 1
        assert "docker_container.traefik" in nextcloud.depends_on[0]

    def test_parse_directory(self, tmp_path):
        import shutil
        shutil.copy(os.path.join(FIXTURES, "stack.tf"), tmp_path / "main.tf")
        (tmp_path / "notes.txt").write_text("not a declaration")
        declarations = self.parser.parse_directory(str(tmp_path))
        assert len(declarations) == 13

    def test_invalid_file_raises(self, tmp_path):
        bad = tmp_path / "bad.tf"
        bad.write_text("this is not { valid hcl !!!")
        with pytest.raises(DeclarationError) as exc_info:
            self.parser.parse_file(str(bad))
        assert "bad.tf" in str(exc_info.value)

    def test_lifecycle_is_not_an_attribute(self, tmp_path):
        tf = tmp_path / "main.tf"
        tf.write_text(
            'resource "docker_volume" "data" {\n'
            '  name = "data"\n'
            '  lifecycle {\n'
            '    prevent_destroy = true\n'
            '  }\n'
            '}\n'
        )
        declarations = self.parser.parse_file(str(tf))
        assert declarations[0].attributes == {"name": "data"}


class TestYamlParser:
    def setup_method(self):
        from stackmap.parsers import yaml_doc
        self.parser = yaml_doc

    def test_fixture_resource_count(self):
        declarations = self.parser.parse_file(os.path.join(FIXTURES, "stack.yaml"))
        assert len(declarations) == 5

    def test_source_format_is_yaml(self):
        declarations = self.parser.parse_file(os.path.join(FIXTURES, "stack.yaml"))
        assert all(d.source_format == "yaml" for d in declarations)

    def test_nested_attributes_preserved(self):
        declarations = self.parser.parse_file(os.path.join(FIXTURES, "stack.yaml"))
        gitea = next(d for d in declarations if d.address == "docker_container.gitea")
        assert gitea.attributes["env"]["GITEA__security__SECRET_KEY"] == "${random_password.gitea_secret.result}"
        assert gitea.attributes["networks_advanced"][0]["aliases"] == ["git"]

    def test_depends_on_popped(self, tmp_path):
        doc = tmp_path / "stack.yaml"
        doc.write_text(
            "resources:\n"
            "  docker_volume:\n"
            "    data:\n"
            "      name: data\n"
            "  docker_container:\n"
            "    app:\n"
            "      image: nginx\n"
            "      depends_on: docker_volume.data\n"
        )
        declarations = self.parser.parse_file(str(doc))
        app = declarations[1]
        assert app.depends_on == ["docker_volume.data"]
        assert "depends_on" not in app.attributes

    def test_invalid_yaml_raises(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("resources: [unclosed\n")
        with pytest.raises(DeclarationError):
            self.parser.parse_file(str(bad))

    def test_resources_must_be_mapping(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("resources:\n  - docker_volume\n")
        with pytest.raises(DeclarationError):
            self.parser.parse_file(str(bad))

    def test_parse_directory_ignores_other_yaml(self, tmp_path):
        import shutil
        shutil.copy(os.path.join(FIXTURES, "stack.yaml"), tmp_path / "stack.yaml")
        (tmp_path / "compose.yaml").write_text("services:\n  web:\n    image: nginx\n")
        declarations = self.parser.parse_directory(str(tmp_path))
        assert len(declarations) == 5


class TestDetectFormat:
    def setup_method(self):
        from stackmap.detect import detect_format
        self.detect = detect_format

    def test_terraform_extension(self):
        assert self.detect(os.path.join(FIXTURES, "stack.tf")) == "terraform"

    def test_yaml_with_resources(self):
        assert self.detect(os.path.join(FIXTURES, "stack.yaml")) == "yaml"

    def test_yaml_without_resources(self, tmp_path):
        other = tmp_path / "values.yml"
        other.write_text("replicas: 3\n")
        assert self.detect(str(other)) == "unknown"

    def test_other_extension(self, tmp_path):
        other = tmp_path / "README.md"
        other.write_text("# readme\n")
        assert self.detect(str(other)) == "unknown"


class TestLoadDeclarations:
    def test_index_runs_across_files(self):
        from stackmap import engine
        declarations = engine.load_declarations([
            os.path.join(FIXTURES, "stack.tf"),
            os.path.join(FIXTURES, "stack.yaml"),
        ])
        assert len(declarations) == 18
        assert [d.index for d in declarations] == list(range(18))

    def test_collect_files_expands_directories(self, tmp_path):
        from stackmap import engine
        (tmp_path / "b.tf").write_text("")
        (tmp_path / "a.tf").write_text("")
        files = engine.collect_files((str(tmp_path), str(tmp_path / "missing.tf")))
        assert [os.path.basename(f) for f in files] == ["a.tf", "b.tf"]
