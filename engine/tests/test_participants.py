from conftest import DM_USER, headers, join, make_character, make_npc


def test_dm_is_seated_on_creation(client, campaign):
    cid = campaign["campaign"]["id"]
    participants = client.get(f"/v1/campaigns/{cid}/participants", headers=headers()).json()
    assert len(participants) == 1
    assert participants[0]["role"] == "dm"
    assert participants[0]["user_id"] == DM_USER
    assert participants[0]["turn_order"] == 1


def test_join_appends_to_turn_order(client, db, campaign, events):
    cid = campaign["campaign"]["id"]
    mira = join(client, db, cid, 2, "Mira")
    tobin = join(client, db, cid, 3, "Tobin")

    assert mira["role"] == "player"
    assert (mira["turn_order"], tobin["turn_order"]) == (2, 3)
    joined = events.of_type("participant_joined")
    assert [e["participant"]["id"] for e in joined] == [mira["id"], tobin["id"]]
    assert joined[0]["campaign_id"] == cid


def test_join_twice_conflicts(client, db, campaign):
    cid = campaign["campaign"]["id"]
    join(client, db, cid, 2, "Mira")
    resp = client.post(f"/v1/campaigns/{cid}/join", json={}, headers=headers(2))
    assert resp.status_code == 409


def test_join_with_unknown_character(client, campaign):
    cid = campaign["campaign"]["id"]
    resp = client.post(f"/v1/campaigns/{cid}/join", json={"character_id": 404}, headers=headers(2))
    assert resp.status_code == 404


def test_dm_adds_player_and_companion(client, db, campaign, events):
    cid = campaign["campaign"]["id"]
    character = make_character(db, 5, "Sela")
    npc = make_npc(db)

    resp = client.post(
        f"/v1/campaigns/{cid}/participants",
        json={"role": "player", "user_id": 5, "character_id": character.id},
        headers=headers(),
    )
    assert resp.status_code == 200
    resp = client.post(
        f"/v1/campaigns/{cid}/participants",
        json={"role": "companion", "npc_id": npc.id, "companion_role": "healer"},
        headers=headers(),
    )
    assert resp.status_code == 200
    companion = resp.json()
    assert companion["companion_role"] == "healer"
    assert companion["user_id"] is None
    assert len(events.of_type("participant_added")) == 2

    dup = client.post(f"/v1/campaigns/{cid}/participants", json={"role": "companion", "npc_id": npc.id}, headers=headers())
    assert dup.status_code == 409


def test_add_participant_validation(client, campaign):
    cid = campaign["campaign"]["id"]
    assert client.post(f"/v1/campaigns/{cid}/participants", json={"role": "companion"}, headers=headers()).status_code == 422
    assert client.post(f"/v1/campaigns/{cid}/participants", json={"role": "dm", "user_id": 4}, headers=headers()).status_code == 422
    assert client.post(f"/v1/campaigns/{cid}/participants", json={"user_id": 4}, headers=headers(4)).status_code == 403


def test_participant_can_leave_but_dm_cannot(client, db, campaign):
    cid = campaign["campaign"]["id"]
    mira = join(client, db, cid, 2, "Mira")
    dm_id = next(p["id"] for p in client.get(f"/v1/campaigns/{cid}/participants", headers=headers()).json() if p["role"] == "dm")

    assert client.delete(f"/v1/campaigns/{cid}/participants/{mira['id']}", headers=headers(3)).status_code == 403
    assert client.delete(f"/v1/campaigns/{cid}/participants/{dm_id}", headers=headers()).status_code == 409
    assert client.delete(f"/v1/campaigns/{cid}/participants/{mira['id']}", headers=headers(2)).status_code == 204
    assert client.delete(f"/v1/campaigns/{cid}/participants/{mira['id']}", headers=headers()).status_code == 404


def test_npc_action_is_broadcast(client, db, campaign, events):
    cid = campaign["campaign"]["id"]
    npc = make_npc(db, name="Brakka")
    companion = client.post(
        f"/v1/campaigns/{cid}/participants",
        json={"role": "companion", "npc_id": npc.id},
        headers=headers(),
    ).json()

    resp = client.post(
        f"/v1/campaigns/{cid}/participants/{companion['id']}/npc-action",
        json={"action": "Brakka hefts her hammer and charges"},
        headers=headers(),
    )
    assert resp.status_code == 200
    announced = events.of_type("npc_action")[0]
    assert announced["npc_name"] == "Brakka"
    assert announced["participant_id"] == companion["id"]
    assert announced["campaign_id"] == cid


def test_npc_action_requires_companion(client, db, campaign):
    cid = campaign["campaign"]["id"]
    mira = join(client, db, cid, 2, "Mira")
    resp = client.post(
        f"/v1/campaigns/{cid}/participants/{mira['id']}/npc-action",
        json={"action": "Dance"},
        headers=headers(),
    )
    assert resp.status_code == 409


def test_campaign_lifecycle_flags(client, db, campaign):
    cid = campaign["campaign"]["id"]
    assert client.post(f"/v1/campaigns/{cid}/archive", headers=headers(2)).status_code == 403
    assert client.post(f"/v1/campaigns/{cid}/archive", headers=headers()).json()["is_archived"] is True
    assert client.post(f"/v1/campaigns/{cid}/restore", headers=headers()).json()["is_archived"] is False
    assert client.post(f"/v1/campaigns/{cid}/complete", headers=headers()).json()["is_completed"] is True


def test_state_snapshot(client, db, campaign):
    cid = campaign["campaign"]["id"]
    join(client, db, cid, 2, "Mira")
    state = client.get(f"/v1/campaigns/{cid}/state", headers=headers()).json()
    assert state["campaign"]["title"] == "Test Campaign"
    assert [p["turn_order"] for p in state["participants"]] == [1, 2]
    assert state["turn"]["state"] == "disabled"
    assert client.get("/v1/campaigns/404/state", headers=headers()).status_code == 404
