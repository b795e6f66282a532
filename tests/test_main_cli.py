from unittest import mock

import main
from main import _parse_args


def _agreement(email):
    return {"user_email": email, "user_name": email.split("@")[0], "status": "pending"}


def test_default_command_invokes_serve() -> None:
    args = _parse_args([])
    assert args.command == "serve"
    assert args.host == "0.0.0.0"
    assert args.port == 8000


def test_serve_options_are_parsed() -> None:
    args = _parse_args(["serve", "--host", "127.0.0.1", "--port", "8080"])
    assert args.command == "serve"
    assert args.host == "127.0.0.1"
    assert args.port == 8080


def test_main_without_arguments_starts_server() -> None:
    sentinel = object()
    with mock.patch.object(main, "create_app", return_value=sentinel), mock.patch("uvicorn.run") as run:
        assert main.main([]) == 0

    run.assert_called_once_with(sentinel, host="0.0.0.0", port=8000)


def test_reconcile_command_removes_duplicates(database, capsys) -> None:
    database.agreements.insert_many([_agreement("a@x.com"), _agreement("a@x.com")])

    assert main.main(["reconcile"], database=database) == 0

    assert database.agreements.count_documents({"user_email": "a@x.com"}) == 1
    assert "Removed 1 duplicate agreement(s)" in capsys.readouterr().out


def test_set_role_creates_then_updates_user(database, capsys) -> None:
    assert main.main(["set-role", "Boss@X.com", "admin", "--name", "Boss"], database=database) == 0
    user = database.users.find_one({"email": "boss@x.com"})
    assert user["role"] == "admin"
    assert user["name"] == "Boss"
    assert "Created boss@x.com with role admin" in capsys.readouterr().out

    assert main.main(["set-role", "boss@x.com", "member"], database=database) == 0
    assert database.users.find_one({"email": "boss@x.com"})["role"] == "member"
    assert database.users.find_one({"email": "boss@x.com"})["name"] == "Boss"
    assert "Updated boss@x.com with role member" in capsys.readouterr().out
