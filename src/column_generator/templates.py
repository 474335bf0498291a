import re
from typing import Mapping


# Field names may contain internal whitespace so multi-word CSV headers work: {{Video Title}}
PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+(?:\s+\w+)*)\}\}")


def fill_prompt_template(template_text: str, row: Mapping[str, str]) -> str:
    """Substitute ``{{field}}`` placeholders with the row's current values.

    Placeholders naming a field the row does not have are left as-is, so a
    partially populated row still produces a usable prompt.
    """

    def _replace(match: re.Match[str]) -> str:
        field_name = match.group(1)
        if field_name not in row:
            return match.group(0)
        return str(row[field_name])

    return PLACEHOLDER_PATTERN.sub(_replace, template_text)


def template_fields(template_text: str) -> list[str]:
    return list(dict.fromkeys(PLACEHOLDER_PATTERN.findall(template_text)))
