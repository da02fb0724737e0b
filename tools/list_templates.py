"""Print the automation template catalog as JSON.

Usage: ``python tools/list_templates.py [template_id ...]``
"""

import json
import sys

from whatsappier.automations.registry import (
    get_template_definition,
    list_template_definitions,
)


def get_catalog(template_ids=None):
    if template_ids:
        definitions = [get_template_definition(t) for t in template_ids]
    else:
        definitions = list_template_definitions()
    return [d.summary() for d in definitions]


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    try:
        catalog = get_catalog(argv)
    except KeyError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    sys.stdout.write(json.dumps(catalog, indent=2) + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
