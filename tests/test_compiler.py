# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for compiler.py module."""

import pytest

from conveyor.actions import ActionRegistry
from conveyor.compiler import CompileError, compile_pipeline, load_pipeline_yaml
from conveyor.errors import ValidationError


@pytest.fixture
def pipeline_def():
    return {
        "pipeline_id": "ship-web",
        "version": "2.1",
        "defaults": {"repository": "registry.example.com/shop/web", "target": "staging"},
        "hosts": {"staging": "deploy@10.0.0.12", "production": "deploy@10.0.0.40"},
        "settings": {"concurrency": 2},
        "stages": [
            {
                "id": "quality",
                "op": "quality.scan",
                "params": {
                    "source_ref": "@ctx.source_ref",
                    "server_url": "https://sonar.example.com",
                    "project_key": "shop-web",
                    "token": "@env.SONAR_TOKEN",
                },
            },
            {
                "id": "build",
                "op": "image.build",
                "needs": "quality",
                "params": {
                    "source_ref": "@ctx.source_ref",
                    "repository": "@vars.repository",
                    "tags": ["latest", "@ctx.commit_sha"],
                },
                "retries": 2,
            },
            {
                "id": "deploy",
                "op": "deploy.run",
                "needs": ["build"],
                "timeout_s": 300,
                "params": {
                    "image_ref": "@run.build.image_ref",
                    "host_ref": "@self.hosts.@vars.target",
                },
            },
        ],
    }


CTX = {"source_ref": "/src/web", "commit_sha": "abc1234"}
ENV = {"SONAR_TOKEN": "squ_secret"}


class TestCompilePipeline:
    """Reference resolution and stage shaping."""

    def test_compiles_stages(self, pipeline_def):
        instance = compile_pipeline(pipeline_def, ctx=CTX, env=ENV, registry=ActionRegistry.default())

        assert instance.pipeline_id == "ship-web"
        assert instance.version == "2.1"
        assert instance.settings == {"concurrency": 2}
        assert [s.stage_id for s in instance.stages] == ["quality", "build", "deploy"]

    def test_resolves_compile_time_refs(self, pipeline_def):
        instance = compile_pipeline(pipeline_def, ctx=CTX, env=ENV)
        quality, build, deploy = instance.stages

        assert quality.params["source_ref"] == "/src/web"
        assert quality.params["token"] == "squ_secret"
        assert build.params["repository"] == "registry.example.com/shop/web"
        assert build.params["tags"] == ["latest", "abc1234"]
        assert deploy.params["host_ref"] == "deploy@10.0.0.12"

    def test_preserves_run_refs(self, pipeline_def):
        instance = compile_pipeline(pipeline_def, ctx=CTX, env=ENV)
        assert instance.stages[2].params["image_ref"] == "@run.build.image_ref"

    def test_variables_override_defaults(self, pipeline_def):
        instance = compile_pipeline(pipeline_def, ctx=CTX, env=ENV, variables={"target": "production"})
        assert instance.stages[2].params["host_ref"] == "deploy@10.0.0.40"

    def test_needs_string_and_list(self, pipeline_def):
        instance = compile_pipeline(pipeline_def, ctx=CTX, env=ENV)
        assert instance.stages[1].needs == ("quality",)
        assert instance.stages[2].needs == ("build",)

    def test_stage_defaults(self, pipeline_def):
        instance = compile_pipeline(
            pipeline_def, ctx=CTX, env=ENV, stage_defaults={"stage_timeout_s": 120, "retries": 1},
        )
        quality, build, deploy = instance.stages
        assert quality.timeout_s == 120
        assert quality.retries == 1
        assert build.retries == 2
        assert deploy.timeout_s == 300

    def test_pipeline_settings_override_stage_defaults(self, pipeline_def):
        pipeline_def["settings"] = {"stage_timeout_s": 60}
        instance = compile_pipeline(pipeline_def, ctx=CTX, env=ENV, stage_defaults={"stage_timeout_s": 120})
        assert instance.stages[0].timeout_s == 60

    def test_missing_ctx_value_is_none(self, pipeline_def):
        instance = compile_pipeline(pipeline_def, ctx={"source_ref": "/src"}, env=ENV)
        assert instance.stages[1].params["tags"] == ["latest", None]

    def test_graph(self, pipeline_def):
        graph = compile_pipeline(pipeline_def, ctx=CTX, env=ENV).graph()
        assert graph.stage_ids == ("quality", "build", "deploy")


class TestCompileErrors:
    """Malformed definitions raise CompileError (a ValidationError)."""

    def test_compile_error_is_validation_error(self):
        assert issubclass(CompileError, ValidationError)

    def test_missing_pipeline_id(self, pipeline_def):
        del pipeline_def["pipeline_id"]
        with pytest.raises(CompileError, match="pipeline_id"):
            compile_pipeline(pipeline_def, ctx=CTX, env=ENV)

    def test_empty_stages(self, pipeline_def):
        pipeline_def["stages"] = []
        with pytest.raises(CompileError, match="non-empty 'stages'"):
            compile_pipeline(pipeline_def, ctx=CTX, env=ENV)

    def test_missing_env_var(self, pipeline_def):
        with pytest.raises(CompileError, match="Stage 'quality': Environment variable not set: SONAR_TOKEN"):
            compile_pipeline(pipeline_def, ctx=CTX, env={})

    def test_unknown_op_with_registry(self, pipeline_def):
        pipeline_def["stages"][0]["op"] = "quality.lint"
        with pytest.raises(CompileError, match="unknown op 'quality.lint'"):
            compile_pipeline(pipeline_def, ctx=CTX, env=ENV, registry=ActionRegistry.default())

    def test_unknown_gate(self, pipeline_def):
        pipeline_def["stages"][0]["gate"] = "strict"
        with pytest.raises(CompileError, match="Unknown gate policy: strict"):
            compile_pipeline(pipeline_def, ctx=CTX, env=ENV)

    def test_unknown_stage_key(self, pipeline_def):
        pipeline_def["stages"][0]["when"] = "always"
        with pytest.raises(CompileError, match="unknown keys when"):
            compile_pipeline(pipeline_def, ctx=CTX, env=ENV)

    def test_unknown_setting(self, pipeline_def):
        pipeline_def["settings"] = {"parallelism": 3}
        with pytest.raises(CompileError, match="Unknown settings: parallelism"):
            compile_pipeline(pipeline_def, ctx=CTX, env=ENV)

    @pytest.mark.parametrize("value", [0, -1, "fast", True])
    def test_bad_timeout(self, pipeline_def, value):
        pipeline_def["stages"][0]["timeout_s"] = value
        with pytest.raises(CompileError, match="timeout_s"):
            compile_pipeline(pipeline_def, ctx=CTX, env=ENV)

    @pytest.mark.parametrize("value", [-1, 1.5, "two"])
    def test_bad_retries(self, pipeline_def, value):
        pipeline_def["stages"][0]["retries"] = value
        with pytest.raises(CompileError, match="retries"):
            compile_pipeline(pipeline_def, ctx=CTX, env=ENV)

    def test_missing_self_path(self, pipeline_def):
        pipeline_def["stages"][2]["params"]["host_ref"] = "@self.hosts.qa"
        with pytest.raises(CompileError, match="missing 'qa'"):
            compile_pipeline(pipeline_def, ctx=CTX, env=ENV)

    def test_missing_dynamic_key(self, pipeline_def):
        pipeline_def["defaults"] = {"repository": "web"}
        with pytest.raises(CompileError, match="Dynamic key not found: @vars.target"):
            compile_pipeline(pipeline_def, ctx=CTX, env=ENV)

    def test_unknown_namespace(self, pipeline_def):
        pipeline_def["stages"][0]["params"]["token"] = "@secrets.SONAR"
        with pytest.raises(CompileError, match="Unknown namespace: @secrets"):
            compile_pipeline(pipeline_def, ctx=CTX, env=ENV)

    def test_stage_must_be_mapping(self, pipeline_def):
        pipeline_def["stages"].append("deploy")
        with pytest.raises(CompileError, match="Stage #4 must be a mapping"):
            compile_pipeline(pipeline_def, ctx=CTX, env=ENV)


class TestLoadPipelineYaml:
    """Reading definitions from disk."""

    def test_load(self, tmp_path):
        path = tmp_path / "ship.yaml"
        path.write_text("pipeline_id: ship\nstages:\n  - id: a\n    op: shell.run\n")
        data = load_pipeline_yaml(str(path))
        assert data["pipeline_id"] == "ship"

    def test_missing_file(self, tmp_path):
        with pytest.raises(CompileError, match="not found"):
            load_pipeline_yaml(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("stages: [unclosed\n")
        with pytest.raises(CompileError, match="Invalid YAML"):
            load_pipeline_yaml(str(path))

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(CompileError, match="must be a mapping"):
            load_pipeline_yaml(str(path))
