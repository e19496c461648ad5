import hashlib

from marketsphere.service.fingerprint import RequestContext, fingerprint


def test_fingerprint_is_sha256_of_joined_parts():
    ctx = RequestContext(ip="10.0.0.1", user_agent="Mozilla/5.0", accept_language="en-US")
    expected = hashlib.sha256(b"10.0.0.1|Mozilla/5.0|en-US").hexdigest()
    assert fingerprint(ctx) == expected


def test_fingerprint_is_deterministic():
    ctx = RequestContext(ip="10.0.0.1", user_agent="agent", accept_language="de")
    assert fingerprint(ctx) == fingerprint(
        RequestContext(ip="10.0.0.1", user_agent="agent", accept_language="de")
    )


def test_missing_parts_are_dropped():
    ctx = RequestContext(ip="10.0.0.1", user_agent="agent")
    assert fingerprint(ctx) == hashlib.sha256(b"10.0.0.1|agent").hexdigest()


def test_any_changed_part_changes_fingerprint():
    base = RequestContext(ip="10.0.0.1", user_agent="agent", accept_language="en")
    assert fingerprint(base) != fingerprint(
        RequestContext(ip="10.0.0.2", user_agent="agent", accept_language="en")
    )
    assert fingerprint(base) != fingerprint(
        RequestContext(ip="10.0.0.1", user_agent="other", accept_language="en")
    )


def test_context_from_headers():
    ctx = RequestContext.from_headers(
        "192.168.1.5", {"user-agent": "curl/8", "accept-language": "fr"}
    )
    assert ctx == RequestContext(ip="192.168.1.5", user_agent="curl/8", accept_language="fr")
