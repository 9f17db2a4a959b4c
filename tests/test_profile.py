from datetime import date

from storefront.models import UserAddress, UserProfile, UserVehicle


def test_profile_requires_login(client):
    assert client.get("/me/profile").status_code == 401


def test_profile_without_details(client, customer):
    resp = client.get("/me/profile")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["user"]["id"] == customer
    assert body["user"]["email"] == "buyer@example.com"
    assert "password_hash" not in body["user"]
    assert body["profile"] is None
    assert body["vehicle"] is None
    assert body["address"] is None


def test_profile_picks_primary_vehicle_and_default_address(client, customer, db):
    db.add(UserProfile(user_id=customer, gender="female", date_of_birth=date(1990, 5, 17)))
    db.add_all([
        UserVehicle(user_id=customer, year=2012, make="Volkswagen", model="Golf", engine="1.6 TDI", is_primary=True),
        UserVehicle(user_id=customer, year=2019, make="Skoda", model="Octavia", engine="2.0 TSI", is_primary=False),
        UserAddress(user_id=customer, address_line1="Main St 1", city="Graz", country="AT"),
        UserAddress(user_id=customer, address_line1="Ring 7", apartment="4", city="Wien", postal_code="1010",
                    country="AT"),
    ])
    db.commit()

    body = client.get("/me/profile").json()
    assert body["profile"] == {"gender": "female", "date_of_birth": "1990-05-17"}
    assert body["vehicle"] == {"year": 2012, "make": "Volkswagen", "model": "Golf", "engine": "1.6 TDI"}
    # no default address: the newest one wins
    assert body["address"] == {"address_line1": "Ring 7", "apartment": "4", "city": "Wien",
                               "postal_code": "1010", "country": "AT"}

    db.query(UserAddress).filter(UserAddress.city == "Graz").update({"is_default": True})
    db.commit()
    assert client.get("/me/profile").json()["address"]["city"] == "Graz"


def test_profile_storage_failure(client, customer, outage):
    outage.fail_when(lambda statement: "FROM user_vehicles" in statement)
    resp = client.get("/me/profile")
    outage.clear()
    assert resp.status_code == 500
    assert resp.json() == {"status": "error", "message": "Failed to load profile"}
