"""Tests for the data-check string."""

from urllib.parse import urlencode

from tma_auth.canonical import build_data_check_string, canonicalize, current_scheme_message
from tma_auth.initdata import parse

from initdata_factory import make_params, sign_params


class TestCanonicalize:
    def test_sorted_order(self):
        payload = parse("b=2&a=1&auth_date=3&hash=" + "0" * 64)
        assert canonicalize(payload) == b"a=1\nauth_date=3\nb=2"

    def test_excludes_signature(self):
        payload = parse("auth_date=3&signature=xyz&a=1")
        assert canonicalize(payload) == b"a=1\nauth_date=3"

    def test_uses_decoded_values(self):
        payload = parse("auth_date=3&user=%7B%22id%22%3A1%7D&hash=" + "0" * 64)
        assert canonicalize(payload) == b'auth_date=3\nuser={"id":1}'

    def test_keeps_blank_values(self):
        payload = parse("auth_date=3&start_param=&hash=" + "0" * 64)
        assert canonicalize(payload) == b"auth_date=3\nstart_param="

    def test_byte_order_not_locale_order(self):
        # uppercase sorts before lowercase in byte order
        payload = parse("b=1&B=2&auth_date=3&hash=" + "0" * 64)
        assert canonicalize(payload) == b"B=2\nauth_date=3\nb=1"

    def test_deterministic(self):
        payload = parse(urlencode(sign_params(make_params())))
        assert canonicalize(payload) == canonicalize(payload)

    def test_independent_of_field_order(self):
        signed = sign_params(make_params())
        forward = parse(urlencode(signed))
        backward = parse(urlencode(dict(reversed(list(signed.items())))))
        assert forward.keys() != backward.keys()
        assert canonicalize(forward) == canonicalize(backward)


class TestBuildDataCheckString:
    def test_matches_canonicalize(self):
        params = make_params()
        payload = parse(urlencode(sign_params(params)))
        assert build_data_check_string(params) == canonicalize(payload)

    def test_accepts_raw_payload(self):
        payload = parse("b=2&auth_date=3&hash=" + "0" * 64)
        assert build_data_check_string(payload) == canonicalize(payload)

    def test_empty(self):
        assert build_data_check_string({}) == b""


class TestCurrentSchemeMessage:
    def test_prefix(self):
        assert current_scheme_message(123456, b"a=1") == b"123456:WebAppData\na=1"
