from __future__ import annotations

import typing

from capa_iam import AWSTag, TagKeys


def cluster_tag_key(cluster_name: str) -> str:
    return f"{TagKeys.CLUSTER_PREFIX}{cluster_name}"


def reserved_tags(cluster_name: str) -> dict[str, str]:
    return {
        TagKeys.OWNED.value: "",
        cluster_tag_key(cluster_name): "owned",
    }


def desired_tags(cluster_name: str, custom_tags: typing.Mapping[str, str] | None = None) -> dict[str, str]:
    """
    Every managed resource carries the ownership marker, the cluster ownership
    marker and the caller's custom tags. Custom tags never override the two
    markers.
    """
    reserved = reserved_tags(cluster_name)
    tags = dict(reserved)
    for key, value in (custom_tags or {}).items():
        if key in reserved:
            continue
        tags[key] = value
    return tags


def to_aws_tags(tags: typing.Mapping[str, str]) -> list[AWSTag]:
    return [{"Key": key, "Value": tags[key]} for key in sorted(tags)]


def from_aws_tags(tags: typing.Iterable[typing.Mapping[str, str]] | None) -> dict[str, str]:
    return {tag["Key"]: tag.get("Value", "") for tag in tags or []}


def tags_to_apply(desired: typing.Mapping[str, str], observed: typing.Mapping[str, str]) -> dict[str, str]:
    """Tags that are missing from `observed` or carry a different value."""
    return {key: value for key, value in desired.items() if observed.get(key) != value}
