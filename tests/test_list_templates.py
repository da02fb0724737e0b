import json

from tools import list_templates


def test_prints_full_catalog(capsys):
    assert list_templates.main([]) == 0
    catalog = json.loads(capsys.readouterr().out)
    assert [t["id"] for t in catalog][0] == "lf-order-to-whatsapp"


def test_unknown_template_id(capsys):
    assert list_templates.main(["nope"]) == 1
    assert "nope" in capsys.readouterr().err
