import pytest

from lms_tools.locations import LocationNotFoundError, LocationService


@pytest.fixture
def service(fake_db):
    fake_db.tables["company_locations"] = [
        {"id": "l1", "location_name": "Head office", "company": "login", "is_active": True, "is_main_office": True},
        {"id": "l2", "location_name": "Bang Phlat", "company": "login", "is_active": True, "is_main_office": False},
        {"id": "l3", "location_name": "Old branch", "company": "login", "is_active": False, "is_main_office": False},
        {"id": "l4", "location_name": "Meta HQ", "company": "meta", "is_active": True, "is_main_office": True},
    ]
    return LocationService(fake_db)


def test_list_filters(service):
    assert [loc["id"] for loc in service.list(company="login", active_only=True)] == ["l1", "l2"]
    assert len(service.list()) == 4


def test_consolidate_dry_run_changes_nothing(service, fake_db):
    report = service.consolidate("Bang Phlat", company="login")
    assert report["kept"]["id"] == "l2"
    assert [loc["id"] for loc in report["deactivated"]] == ["l1"]
    assert fake_db.tables["company_locations"][0]["is_active"] is True


def test_consolidate_apply(service, fake_db):
    service.consolidate("Bang Phlat", company="login", apply=True)
    rows = {row["id"]: row for row in fake_db.tables["company_locations"]}
    assert rows["l2"]["is_main_office"] is True and rows["l2"]["is_active"] is True
    assert rows["l1"]["is_active"] is False and rows["l1"]["is_main_office"] is False
    assert rows["l4"]["is_active"] is True
    assert not any(call[0] == "delete" for call in fake_db.calls)


def test_consolidate_unknown_location(service):
    with pytest.raises(LocationNotFoundError):
        service.consolidate("Nowhere", company="login")
