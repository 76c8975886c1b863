"""
Tests for license key issuance, listing and redemption.
Tests /admin/licenses, /license and the licenses service
"""
from datetime import datetime, timezone, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from licenses import (
    KEY_ALPHABET, KEY_LENGTH, LicenseError, create_batch, expire_licenses,
    generate_license_key, list_licenses, redeem_license, ensure_utc
)
from models import CLIENT_ID_MAX_LENGTH, LicenseBatch, LicenseKey


class TestLicenseService:

    def test_generate_key_format(self):
        key = generate_license_key()
        assert len(key) == KEY_LENGTH
        assert set(key) <= set(KEY_ALPHABET)

    def test_create_batch_unique_keys(self, test_db: Session):
        batch, keys = create_batch(test_db, "launch", "yearly", 25, 365, notes="promo")

        assert len(keys) == 25
        assert len({k.key for k in keys}) == 25
        assert test_db.query(LicenseKey).filter(LicenseKey.batch_id == batch.id).count() == 25
        assert all(k.status == "unused" and k.notes == "promo" for k in keys)
        assert test_db.get(LicenseBatch, batch.id).created_by == "admin"

    @pytest.mark.parametrize("kwargs", [
        {"name": "", "license_type": "monthly", "count": 1, "duration_days": 30},
        {"name": "x", "license_type": "weekly", "count": 1, "duration_days": 30},
        {"name": "x", "license_type": "monthly", "count": 0, "duration_days": 30},
        {"name": "x", "license_type": "monthly", "count": 1, "duration_days": -1},
    ])
    def test_create_batch_rejects_bad_input(self, test_db: Session, kwargs):
        with pytest.raises(LicenseError):
            create_batch(test_db, **kwargs)

    def test_redeem_uses_batch_duration(self, test_db: Session):
        _, keys = create_batch(test_db, "trial", "monthly", 1, 7)
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)

        license_key = redeem_license(test_db, keys[0].key, "client-1", now=now)

        assert license_key.status == "used"
        assert license_key.used_by == "client-1"
        assert ensure_utc(license_key.expires_at) == now + timedelta(days=7)

    def test_redeem_lifetime_never_expires(self, test_db: Session):
        _, keys = create_batch(test_db, "vip", "lifetime", 1, 0)
        assert redeem_license(test_db, keys[0].key, "client-1").expires_at is None

    def test_redeem_twice_rejected(self, test_db: Session):
        _, keys = create_batch(test_db, "trial", "monthly", 1, 30)
        redeem_license(test_db, keys[0].key, "client-1")

        with pytest.raises(LicenseError):
            redeem_license(test_db, keys[0].key, "client-2")

    def test_expire_licenses(self, test_db: Session):
        _, keys = create_batch(test_db, "trial", "monthly", 2, 30)
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        redeem_license(test_db, keys[0].key, "client-1", now=now)

        assert expire_licenses(test_db, now=now + timedelta(days=29)) == 0
        assert expire_licenses(test_db, now=now + timedelta(days=30)) == 1
        statuses = sorted(lk.status for lk in test_db.query(LicenseKey).all())
        assert statuses == ["expired", "unused"]

    def test_list_filters(self, test_db: Session):
        monthly, _ = create_batch(test_db, "m", "monthly", 2, 30)
        _, yearly_keys = create_batch(test_db, "y", "yearly", 3, 365)
        redeem_license(test_db, yearly_keys[0].key, "client-1")

        assert len(list_licenses(test_db)) == 5
        assert len(list_licenses(test_db, license_type="yearly")) == 3
        assert len(list_licenses(test_db, status="used")) == 1
        assert len(list_licenses(test_db, batch_id=monthly.id)) == 2
        with pytest.raises(LicenseError):
            list_licenses(test_db, status="stolen")


class TestLicenseEndpoints:

    def test_create_batch_endpoint(self, client: TestClient):
        response = client.post("/admin/licenses", json={
            "name": "launch", "type": "monthly", "count": 3, "duration": 30
        })

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["batchId"]
        assert len(data["keys"]) == 3

    def test_create_batch_validation_400(self, client: TestClient):
        response = client.post("/admin/licenses", json={
            "name": "launch", "type": "weekly", "count": 3, "duration": 30
        })
        assert response.status_code == 400

    def test_list_endpoint_filters(self, client: TestClient):
        batch_id = client.post("/admin/licenses", json={
            "name": "a", "type": "monthly", "count": 2, "duration": 30
        }).json()["batchId"]
        client.post("/admin/licenses", json={"name": "b", "type": "lifetime", "count": 1, "duration": 0})

        licenses = client.get("/admin/licenses", params={"batchId": batch_id}).json()["licenses"]
        assert len(licenses) == 2
        assert {lk["type"] for lk in licenses} == {"monthly"}
        assert client.get("/admin/licenses", params={"type": "lifetime"}).json()["licenses"][0]["status"] == "unused"

    def test_redeem_endpoint(self, client: TestClient, polled_client: str):
        key = client.post("/admin/licenses", json={
            "name": "a", "type": "yearly", "count": 1, "duration": 365
        }).json()["keys"][0]

        response = client.put("/license", json={"key": key, "clientId": polled_client})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["type"] == "yearly"
        assert data["expiresAt"]

        again = client.put("/license", json={"key": key, "clientId": polled_client})
        assert again.status_code == 400

    def test_redeem_client_id_length_matches_column(self, client: TestClient):
        assert LicenseKey.__table__.c.used_by.type.length == CLIENT_ID_MAX_LENGTH

        keys = client.post("/admin/licenses", json={
            "name": "a", "type": "monthly", "count": 2, "duration": 30
        }).json()["keys"]

        longest = "c" * CLIENT_ID_MAX_LENGTH
        response = client.put("/license", json={"key": keys[0], "clientId": longest})
        assert response.status_code == 200

        too_long = client.put("/license", json={"key": keys[1], "clientId": longest + "c"})
        assert too_long.status_code == 400

    def test_redeem_missing_fields_400(self, client: TestClient):
        assert client.put("/license", json={"key": "ABC"}).status_code == 400

    def test_license_admin_routes_require_key(self, client: TestClient, admin_key: dict):
        assert client.get("/admin/licenses").status_code == 401
        assert client.get("/admin/licenses", headers=admin_key).status_code == 200
