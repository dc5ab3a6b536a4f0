from app.services.query_hash import create_query_hash


def test_hash_is_sha256_hex():
    value = create_query_hash("squat form", "system", "sonar-medium-chat")
    assert len(value) == 64
    assert all(c in "0123456789abcdef" for c in value)


def test_hash_is_deterministic_and_case_insensitive():
    a = create_query_hash("Best Squat Form", "You are a Coach", "Sonar-Medium-Chat")
    b = create_query_hash("best squat form", "you are a coach", "sonar-medium-chat")
    assert a == b


def test_hash_depends_on_every_field():
    base = create_query_hash("squat", "coach", "sonar-medium-chat")
    assert create_query_hash("deadlift", "coach", "sonar-medium-chat") != base
    assert create_query_hash("squat", "physio", "sonar-medium-chat") != base
    assert create_query_hash("squat", "coach", "sonar-small-chat") != base


def test_missing_model_uses_default_key():
    assert create_query_hash("squat", "coach", None) == create_query_hash("squat", "coach", "default")
    assert create_query_hash("squat", "coach") == create_query_hash("squat", "coach", "default")


def test_separator_inside_field_does_not_collide():
    assert create_query_hash("a|b", "c") != create_query_hash("a", "b|c")
