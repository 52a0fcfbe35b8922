from conftest import BUSINESS_ID, CITY, WALLETPUSH_CREDENTIALS, admin_headers, business_headers
from stamp_engine.models.loyalty_membership import LoyaltyMembership
from stamp_engine.models.loyalty_program import LoyaltyProgram
from stamp_engine.services.presence_token_service import rotate_counter_token


def _create_and_submit(client):
    resp = client.post(
        "/loyalty/program",
        headers=business_headers(),
        json={"business_name": "Corner Coffee", "reward_description": "Free coffee", "min_gap_minutes": 0, "max_earns_per_day": 10},
    )
    assert resp.status_code == 201, resp.text
    resp = client.post("/loyalty/program/submit", headers=business_headers())
    assert resp.status_code == 200, resp.text
    return resp.json()


def _provision(client):
    submitted = _create_and_submit(client)
    resp = client.post(
        f"/admin/loyalty/requests/{submitted['requestId']}/activate",
        headers=admin_headers(),
        json=WALLETPUSH_CREDENTIALS,
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_root(client):
    assert client.get("/").json() == {"message": "Stamp Engine is running"}


def test_business_routes_require_headers(client):
    assert client.get("/loyalty/program", headers={"X-City": CITY}).status_code == 401
    assert client.get("/loyalty/program", headers={"X-Business-Id": BUSINESS_ID}).status_code == 400


def test_provisioning_flow_over_http(client):
    submitted = _create_and_submit(client)
    assert submitted["status"] == "submitted"

    queue = client.get("/admin/loyalty/queue", headers=admin_headers()).json()
    assert queue["total"] == 1
    assert queue["items"][0]["design_spec_json"]["reward_description"] == "Free coffee"
    assert queue["items"][0]["ageHours"] is not None

    other_city = client.get("/admin/loyalty/queue", headers=admin_headers(city="leeds")).json()
    assert other_city["total"] == 0

    resp = client.post(
        f"/admin/loyalty/requests/{submitted['requestId']}/activate",
        headers=admin_headers(),
        json=WALLETPUSH_CREDENTIALS,
    )
    body = resp.json()
    assert body["status"] == "active"
    assert "walletpush_api_key" not in body

    again = client.post("/loyalty/program/submit", headers=business_headers())
    assert again.status_code == 409
    assert again.json()["detail"]["currentStatus"] == "active"


def test_submit_without_reward_is_validation_error(client):
    client.post("/loyalty/program", headers=business_headers(), json={"business_name": "Corner Coffee"})

    resp = client.post("/loyalty/program/submit", headers=business_headers())

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "validation_error"
    assert client.get("/loyalty/program", headers=business_headers()).json()["status"] == "draft"


def test_self_service_rejects_template_fields(client):
    _provision(client)

    ok = client.patch("/loyalty/program", headers=business_headers(), json={"program_name": "Bean Club"})
    assert ok.status_code == 200
    assert ok.json()["program_name"] == "Bean Club"

    forbidden = client.patch("/loyalty/program", headers=business_headers(), json={"reward_threshold": 3})
    assert forbidden.status_code == 422

    out_of_range = client.patch("/loyalty/program", headers=business_headers(), json={"min_gap_minutes": 5000})
    assert out_of_range.status_code == 400


def test_join_earn_redeem_over_http(client, db, wallet_client):
    program = _provision(client)
    public_id = program["public_id"]

    joined = client.post("/loyalty/join", json={"publicId": public_id, "walletPassId": "wp-http-1", "firstName": "Ada"})
    assert joined.status_code == 200
    body = joined.json()
    assert body["alreadyMember"] is False
    assert body["hasWalletPass"] is True
    assert body["walletpushSerial"] == "serial-1"

    rejoined = client.post("/loyalty/join", json={"publicId": public_id, "walletPassId": "wp-http-1"}).json()
    assert rejoined["alreadyMember"] is True
    assert rejoined["membershipId"] == body["membershipId"]

    stored = db.query(LoyaltyProgram).filter(LoyaltyProgram.public_id == public_id).one()
    for _ in range(10):
        rotate_counter_token(db, stored)
        resp = client.post(
            "/loyalty/earn",
            json={"publicId": public_id, "walletPassId": "wp-http-1", "token": stored.counter_qr_token},
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["success"] is True

    earned = resp.json()
    assert earned["newBalance"] == 10
    assert earned["rewardUnlocked"] is True

    # la synchro de fond a poussé le palier atteint vers le pass
    assert ("serial-1", "Last_Message", "You earned a free Free coffee at Corner Coffee!", True) in wallet_client.updates

    redeemed = client.post(
        "/loyalty/redemption/consume",
        json={"membershipId": body["membershipId"], "walletPassId": "wp-http-1"},
    )
    assert redeemed.status_code == 200, redeemed.text
    assert redeemed.json()["newBalance"] == 0
    assert redeemed.json()["rewardDescription"] == "Free coffee"

    status = client.get(f"/loyalty/redemption/{redeemed.json()['redemptionId']}").json()
    assert status["isActive"] is True

    again = client.post(
        "/loyalty/redemption/consume",
        json={"membershipId": body["membershipId"], "walletPassId": "wp-http-1"},
    )
    assert again.status_code == 400
    assert again.json()["detail"]["code"] == "insufficient_balance"

    db.expire_all()
    membership = db.query(LoyaltyMembership).one()
    assert membership.wallet_sync_pending is False
    assert membership.stamps_balance == membership.total_earned - membership.total_redeemed == 0

    mine = client.get("/loyalty/memberships/wp-http-1").json()["memberships"]
    assert mine[0]["businessName"] == "Corner Coffee"
    assert mine[0]["stampsBalance"] == 0


def test_earn_rejections_map_to_http_status(client):
    program = _provision(client)
    public_id = program["public_id"]

    bad = client.post("/loyalty/earn", json={"publicId": public_id, "walletPassId": "wp-x", "token": "nope"})
    assert bad.status_code == 403
    assert bad.json()["reason"] == "invalid_token"
    assert bad.json()["success"] is False

    client.patch(f"/admin/loyalty/programs/{program['id']}/status", headers=admin_headers(), json={"status": "paused"})
    paused = client.post("/loyalty/earn", json={"publicId": public_id, "walletPassId": "wp-x", "token": "nope"})
    assert paused.status_code == 400
    assert paused.json()["reason"] == "program_inactive"


def test_owner_dashboard_endpoints(client, db):
    program = _provision(client)
    client.post("/loyalty/join", json={"publicId": program["public_id"], "walletPassId": "wp-dash-0001"})

    summary = client.get("/loyalty/program/summary", headers=business_headers()).json()
    assert summary["activeMembers"] == 1
    assert summary["status"] == "active"

    members = client.get("/loyalty/program/members", headers=business_headers()).json()
    assert members["total"] == 1
    assert members["members"][0]["wallet_pass_id_masked"] == "...0001"

    csv_resp = client.get("/loyalty/program/members?format=csv", headers=business_headers())
    assert csv_resp.headers["content-type"].startswith("text/csv")
    assert "loyalty-members-" in csv_resp.headers["content-disposition"]
    assert csv_resp.text.startswith("Name,Email,Joined")

    member_id = members["members"][0]["id"]
    deactivated = client.patch(
        f"/loyalty/program/members/{member_id}", headers=business_headers(), json={"status": "inactive"}
    )
    assert deactivated.json()["status"] == "inactive"

    rotated = client.post("/loyalty/program/rotate-token", headers=business_headers()).json()
    assert len(rotated["counterQrToken"]) == 32


def test_admin_scope_and_tools(client):
    program = _provision(client)

    wrong_city = client.patch(
        f"/admin/loyalty/programs/{program['id']}/status", headers=admin_headers(city="leeds"), json={"status": "paused"}
    )
    assert wrong_city.status_code == 403

    listed = client.get("/admin/loyalty/programs", headers=admin_headers()).json()
    assert [p["id"] for p in listed] == [program["id"]]

    integrity = client.get(f"/admin/loyalty/programs/{program['id']}/integrity", headers=admin_headers()).json()
    assert integrity["ok"] is True

    resync = client.post(f"/admin/loyalty/programs/{program['id']}/wallet-resync", headers=admin_headers()).json()
    assert resync["processed"] == 0

    no_admin = client.get("/admin/loyalty/queue", headers={"X-City": CITY})
    assert no_admin.status_code == 401
