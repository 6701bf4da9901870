"""Tests for resource and module extraction."""

from __future__ import annotations

import textwrap

from tests._fixtures.tree_builder import TreeBuilder

from tfsketch.extractor import Extractor, ExtractorSettings, parse_hcl
from tfsketch.models import EMPTY_ATTRIBUTE_LABEL, NO_ATTRIBUTE_LABEL, FieldKind, FieldValue, PathNode


def _extract(text: str, settings: ExtractorSettings | None = None):
    parsed = parse_hcl(textwrap.dedent(text).lstrip("\n"), "/tf/main.tf")
    return Extractor(settings).extract_file(parsed)


def test_display_field_keeps_raw_source_text() -> None:
    extraction = _extract(
        """
        resource "aws_s3_bucket" "logs" {
          name = "abc"
        }
        """
    )

    resource = extraction.resources[0]
    assert resource.key == "aws_s3_bucket.logs"
    assert resource.display_field == FieldValue.literal('"abc"')
    assert resource.file_path == "/tf/main.tf"
    assert resource.is_multiple is False


def test_display_field_priority_uses_first_present_attribute() -> None:
    extraction = _extract(
        """
        resource "aws_iam_role" "app" {
          id          = "role-id"
          name_prefix = "app-"
        }
        """
    )

    assert extraction.resources[0].display_field.text == '"app-"'


def test_display_field_accepts_traversals() -> None:
    extraction = _extract(
        """
        resource "aws_iam_role" "app" {
          name = var.role_name
        }
        """
    )

    assert extraction.resources[0].display_label == "var.role_name"


def test_display_field_sentinels() -> None:
    extraction = _extract(
        """
        resource "aws_sqs_queue" "computed" {
          name = format("%s-queue", var.env)
        }

        resource "aws_sqs_queue" "bare" {
          delay_seconds = 10
        }
        """
    )

    by_name = {resource.name: resource for resource in extraction.resources}
    assert by_name["computed"].display_field.kind is FieldKind.UNSUPPORTED
    assert by_name["computed"].display_label == EMPTY_ATTRIBUTE_LABEL
    assert by_name["bare"].display_field.kind is FieldKind.ABSENT
    assert by_name["bare"].display_label == NO_ATTRIBUTE_LABEL


def test_custom_display_attributes() -> None:
    settings = ExtractorSettings.build(display_attributes="bucket, name")
    extraction = _extract(
        """
        resource "aws_s3_bucket" "logs" {
          name   = "ignored"
          bucket = "logs-bucket"
        }
        """,
        settings,
    )

    assert settings.display_attributes == ("bucket", "name")
    assert extraction.resources[0].display_field.text == '"logs-bucket"'


def test_for_each_accepts_collections_and_traversals_only() -> None:
    extraction = _extract(
        """
        resource "aws_s3_bucket" "from_var" {
          for_each = var.buckets
        }

        resource "aws_s3_bucket" "from_object" {
          for_each = { a = 1 }
        }

        resource "aws_s3_bucket" "from_tuple" {
          for_each = ["a", "b"]
        }

        resource "aws_s3_bucket" "from_call" {
          for_each = toset(var.names)
        }
        """
    )

    by_name = {resource.name: resource for resource in extraction.resources}
    assert by_name["from_var"].for_each == "var.buckets"
    assert by_name["from_object"].for_each == "{a = 1}"
    assert by_name["from_tuple"].for_each == '["a", "b"]'
    assert by_name["from_tuple"].is_multiple is True
    assert by_name["from_call"].for_each == ""
    assert by_name["from_call"].is_multiple is False


def test_type_and_name_filters() -> None:
    settings = ExtractorSettings.build(type_regexp="^aws_s3_", name_regexp="logs")
    extraction = _extract(
        """
        resource "aws_s3_bucket" "logs" {}
        resource "aws_s3_bucket" "data" {}
        resource "aws_iam_role" "logs" {}
        """,
        settings,
    )

    assert [resource.key for resource in extraction.resources] == ["aws_s3_bucket.logs"]


def test_module_references() -> None:
    extraction = _extract(
        """
        module "vpc" {
          source  = "terraform-aws-modules/vpc/aws"
          version = "5.0.0"
        }

        module "local" {
          source   = "./modules/local"
          for_each = var.envs
        }

        module "parent" {
          source = "../"
        }

        module "dynamic" {
          source = var.module_source
        }
        """
    )

    by_name = {module.name: module for module in extraction.module_refs}
    assert set(by_name) == {"vpc", "local", "dynamic"}
    assert by_name["vpc"].is_external is True
    assert by_name["vpc"].registry_key == "terraform-aws-modules/vpc/aws@5.0.0"
    assert by_name["local"].is_external is False
    assert by_name["local"].for_each == "var.envs"
    assert by_name["local"].version == ""
    assert by_name["dynamic"].source == ""


def test_extract_directory_skips_broken_files_and_merges(tree_builder: TreeBuilder) -> None:
    tree_builder.write(
        {
            "a.tf": """
            resource "aws_s3_bucket" "logs" {
              name = "first"
            }
            """,
            "b.tf": """
            resource "aws_s3_bucket" "logs" {
              name = "second"
            }
            module "net" {
              source = "./modules/net"
            }
            """,
            "c.tf": """
            resource "aws_s3_bucket" "broken" {
              name = "unterminated
            }
            """,
            "notes.txt": "not terraform",
        }
    )
    node = PathNode(full_path=str(tree_builder.path()), traverse_key=".")

    parsed = Extractor().extract_directory(node)

    assert parsed == 2
    assert node.parsed is True
    assert list(node.resources) == ["aws_s3_bucket.logs"]
    assert node.resources["aws_s3_bucket.logs"].display_field.text == '"second"'
    assert node.resources["aws_s3_bucket.logs"].file_path.endswith("b.tf")
    assert list(node.module_refs) == ["net"]
