def test_create_project_derives_key(client, db, make_user, headers):
    alice = make_user("alice")
    res = client.post("/api/projects", json={"name": "Bug Tracker App", "description": "Tracks bugs"}, headers=headers(alice))

    assert res.status_code == 201
    project = res.json()["data"]
    assert project["key"] == "BUTRAP"
    assert project["owner"]["username"] == "alice"
    assert project["stats"]["total_bugs"] == 0
    assert db.project.find_one({"key": "BUTRAP"})["owner"] == alice["_id"]


def test_create_project_with_explicit_key(client, make_user, headers):
    alice = make_user("alice")
    res = client.post(
        "/api/projects",
        json={"name": "Mobile", "key": "mob2", "category": "mobile", "repository_url": "https://github.com/o/r"},
        headers=headers(alice),
    )
    project = res.json()["data"]
    assert project["key"] == "MOB2"
    assert project["category"] == "mobile"
    assert project["repository"] == {"url": "https://github.com/o/r", "branch": "main"}


def test_create_project_rejects_bad_input(client, make_user, headers):
    alice = make_user("alice")
    client.post("/api/projects", json={"name": "First", "key": "DUP"}, headers=headers(alice))

    res = client.post("/api/projects", json={"name": "Second", "key": "DUP"}, headers=headers(alice))
    assert res.status_code == 400
    assert "already exists" in res.json()["message"]

    assert client.post("/api/projects", json={"name": "Bad", "key": "1AB"}, headers=headers(alice)).status_code == 400
    assert client.post("/api/projects", json={"name": "   "}, headers=headers(alice)).status_code == 400
    assert client.post("/api/projects", json={"name": "P", "priority": "whenever"}, headers=headers(alice)).status_code == 400


def test_list_projects_scoped_to_membership(client, make_user, make_project, headers):
    alice = make_user("alice")
    bob = make_user("bob")
    admin = make_user("root", role="admin")
    make_project(alice, key="ONE")
    make_project(bob, key="TWO", members=[alice])
    make_project(bob, key="THREE")

    keys = {p["key"] for p in client.get("/api/projects", headers=headers(alice)).json()["data"]["projects"]}
    assert keys == {"ONE", "TWO"}
    keys = {p["key"] for p in client.get("/api/projects", headers=headers(admin)).json()["data"]["projects"]}
    assert keys == {"ONE", "TWO", "THREE"}


def test_get_project_visibility(client, make_user, make_project, headers):
    alice = make_user("alice")
    bob = make_user("bob")
    project = make_project(alice)

    assert client.get(f"/api/projects/{project['_id']}", headers=headers(alice)).status_code == 200
    assert client.get(f"/api/projects/{project['_id']}", headers=headers(bob)).status_code == 403
    assert client.get("/api/projects/nope", headers=headers(alice)).status_code == 400
    assert client.get("/api/projects/507f1f77bcf86cd799439011", headers=headers(alice)).status_code == 404


def test_member_management(client, make_user, make_project, headers):
    alice = make_user("alice")
    bob = make_user("bob", google_id="B" * 28)
    carol = make_user("carol")
    project = make_project(alice)
    url = f"/api/projects/{project['_id']}/members"

    assert client.post(url, json={"user_id": str(carol["_id"])}, headers=headers(bob)).status_code == 403

    res = client.post(url, json={"user_id": "B" * 28, "role": "tester"}, headers=headers(alice))
    assert res.status_code == 200
    members = res.json()["data"]["members"]
    assert [(m["user"]["username"], m["role"]) for m in members] == [("bob", "tester")]

    # adding twice keeps a single entry
    res = client.post(url, json={"user_id": str(bob["_id"])}, headers=headers(alice))
    assert len(res.json()["data"]["members"]) == 1

    assert client.get(f"/api/projects/{project['_id']}", headers=headers(bob)).status_code == 200
    assert client.post(url, json={"user_id": str(carol["_id"]), "role": "boss"}, headers=headers(alice)).status_code == 400

    res = client.delete(f"{url}/{bob['_id']}", headers=headers(alice))
    assert res.json()["data"]["members"] == []
    assert client.delete(f"{url}/{alice['_id']}", headers=headers(alice)).status_code == 400
