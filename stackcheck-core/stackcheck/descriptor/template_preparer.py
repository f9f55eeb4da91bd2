import json
import logging
import os

import yaml

from stackcheck.descriptor.exceptions import DuplicateLogicalNameError, SchemaError
from stackcheck.utils.strings import to_str

LOG = logging.getLogger(__name__)

# short form tags which do not map to "Fn::<name>"
PLAIN_TAGS = ("Ref", "Condition")


class NoDatesSafeLoader(yaml.SafeLoader):
    """
    Safe YAML loader that parses date strings as strings (not date objects), understands the short form of
    intrinsic functions (``!Ref``, ``!Sub``, ``!GetAtt``, ...) and rejects duplicate mapping keys.
    """

    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            self.flatten_mapping(node)
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, str):
                continue
            if key in seen:
                raise DuplicateLogicalNameError(
                    "Template format error: duplicate key '%s' (line %s)"
                    % (key, key_node.start_mark.line + 1),
                    logical_name=key,
                )
            seen.add(key)
        return super(NoDatesSafeLoader, self).construct_mapping(node, deep=deep)


NoDatesSafeLoader.yaml_implicit_resolvers = {
    k: [r for r in v if r[0] != "tag:yaml.org,2002:timestamp"]
    for k, v in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _construct_intrinsic_function(loader: NoDatesSafeLoader, tag_suffix: str, node: yaml.Node) -> dict:
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)

    if tag_suffix in PLAIN_TAGS:
        return {tag_suffix: value}
    if tag_suffix == "GetAtt" and isinstance(value, str):
        # !GetAtt Resource.Attribute.Nested -> ["Resource", "Attribute.Nested"]
        value = value.split(".", 1)
    return {f"Fn::{tag_suffix}": value}


NoDatesSafeLoader.add_multi_constructor("!", _construct_intrinsic_function)


def _reject_duplicate_json_keys(pairs: list[tuple]) -> dict:
    result = {}
    for key, value in pairs:
        if key in result:
            raise DuplicateLogicalNameError(
                "Template format error: duplicate key '%s'" % key, logical_name=key
            )
        result[key] = value
    return result


def parse_template(template: str | bytes) -> dict:
    """
    Parse the given descriptor body, either JSON or YAML.

    :param template: the raw descriptor text
    :return: the descriptor as a dict
    :raises SchemaError: if the text is not a JSON or YAML mapping
    """
    try:
        template = to_str(template)
    except UnicodeDecodeError as e:
        raise SchemaError("Template format error: the template is not valid UTF-8 (%s)" % e.reason) from e
    if not template or not template.strip():
        raise SchemaError("Template format error: empty template body")

    try:
        parsed = json.loads(template, object_pairs_hook=_reject_duplicate_json_keys)
    except json.JSONDecodeError:
        try:
            parsed = yaml.load(template, Loader=NoDatesSafeLoader)
        except yaml.YAMLError as e:
            raise SchemaError("Template format error: %s" % e) from e

    if not isinstance(parsed, dict):
        raise SchemaError("Template format error: the template must be a mapping of sections")
    return parsed


def read_template(path: str) -> str:
    """Read a descriptor body from the file system."""
    if not os.path.isfile(path):
        raise SchemaError("Template file %s does not exist" % path)
    LOG.debug("Reading descriptor from %s", path)
    with open(path, "r", encoding="utf-8") as template_file:
        try:
            return template_file.read()
        except UnicodeDecodeError as e:
            raise SchemaError("Template file %s is not valid UTF-8 (%s)" % (path, e.reason)) from e
