import pytest

from conftest import FakeCatalog
from showtrackr.manage import build_parser, seed_user
from showtrackr.services import list_tracked_shows


def test_seed_user_adds_catalog_shows_once(db_session, meta):
    catalog = FakeCatalog({82: meta(82), 172: meta(172)})

    added = seed_user(db_session, catalog, "tester", [82, 999, 172, 82])

    assert added == [82, 172]
    shows = list_tracked_shows(db_session, "tester")
    assert sorted(show.external_show_id for show in shows) == [82, 172]
    assert {show.status for show in shows} == {"plan_to_watch"}
    assert seed_user(db_session, catalog, "tester", [82]) == []


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])

    args = build_parser().parse_args(["remove-show", "tester", "1190"])
    assert (args.command, args.user_id, args.show_id) == ("remove-show", "tester", 1190)
