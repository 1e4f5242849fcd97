import pytest
from motoride import cache, schemas, security
from motoride.config import settings
from motoride.errors import NotFound, Forbidden, Unauthorized
import motoride.address_service as address_service
import motoride.auth_service as auth_service
import motoride.feedback_service as feedback_service
import motoride.request_service as request_service
import motoride.ride_service as ride_service
import motoride.user_service as user_service
from conftest import make_user, make_ride


PHONE = "9876543210"


async def _login(conn, redis, phone=PHONE, **profile):
    sent = await auth_service.login(conn, redis, schemas.LoginRequest(phone=phone, **profile))
    otp = redis.store[cache.otp_key(phone)]
    return sent, otp


async def test_login_creates_user_once_and_stores_code(conn, fake_redis):
    sent, otp = await _login(conn, fake_redis, name="Asha", city="Pune")
    assert sent["message"] == "OTP sent successfully"
    assert "otp" not in sent
    assert len(otp) == 6 and otp.isdigit()
    assert fake_redis.ttls[cache.otp_key(PHONE)] == settings.OTP_TTL_SEC

    again, second_otp = await _login(conn, fake_redis)
    assert again["user_id"] == sent["user_id"]
    # the newest code replaces the previous one
    assert fake_redis.store[cache.otp_key(PHONE)] == second_otp


async def test_verify_otp_issues_token_and_consumes_code(conn, fake_redis):
    sent, otp = await _login(conn, fake_redis, name="Asha", city="Pune")

    with pytest.raises(Unauthorized):
        wrong = "000000" if otp != "000000" else "111111"
        await auth_service.verify_otp(conn, fake_redis, schemas.VerifyOtpRequest(phone=PHONE, otp=wrong))

    result = await auth_service.verify_otp(conn, fake_redis, schemas.VerifyOtpRequest(phone=PHONE, otp=otp))
    assert result["user"]["id"] == sent["user_id"]
    assert result["user"]["name"] == "Asha"
    claims = await security.resolve_token(result["token"], fake_redis)
    assert claims["sub"] == sent["user_id"]
    assert claims["phone"] == PHONE

    with pytest.raises(Unauthorized):
        await auth_service.verify_otp(conn, fake_redis, schemas.VerifyOtpRequest(phone=PHONE, otp=otp))


def test_otp_must_be_six_digits():
    with pytest.raises(ValueError):
        schemas.VerifyOtpRequest(phone=PHONE, otp="12ab56")
    with pytest.raises(ValueError):
        schemas.VerifyOtpRequest(phone=PHONE, otp="12345")


async def test_logout_revokes_token(conn, fake_redis):
    _, otp = await _login(conn, fake_redis)
    token = (await auth_service.verify_otp(conn, fake_redis, schemas.VerifyOtpRequest(phone=PHONE, otp=otp)))["token"]
    claims = await security.resolve_token(token, fake_redis)

    await auth_service.logout(fake_redis, claims)
    assert fake_redis.ttls[cache.revoked_key(claims["jti"])] > 0
    with pytest.raises(Unauthorized):
        await security.resolve_token(token, fake_redis)


def test_garbage_token_is_rejected():
    with pytest.raises(Unauthorized):
        security.decode_token("not-a-token")


async def test_profile_update_and_public_view(engine, conn):
    user_id = await make_user(engine, "9811111111", "Kiran")

    updated = await user_service.update_user(
        conn, user_id, schemas.UserUpdate(city="Mumbai", vehicle_number="MH01ZZ9999")
    )
    assert updated["city"] == "Mumbai"
    assert updated["vehicle_number"] == "MH01ZZ9999"
    assert updated["name"] == "Kiran"

    cleared = await user_service.update_user(conn, user_id, schemas.UserUpdate(vehicle_number="  "))
    assert cleared["vehicle_number"] is None

    public = await user_service.get_user(conn, user_id, public=True)
    assert set(public) == {"id", "name", "city", "vehicle_number"}

    with pytest.raises(NotFound):
        await user_service.get_user(conn, "missing")


async def test_user_stats(engine, conn):
    rider = await make_user(engine, "9822222221", "Rider", vehicle="MH12ST0001")
    passenger = await make_user(engine, "9822222222", "Passenger")
    ride = await make_ride(engine, rider)
    await make_ride(engine, rider)
    req = await request_service.create_request(conn, ride["id"], passenger, schemas.RequestCreate())
    await request_service.accept_request(conn, req["id"], rider)
    await ride_service.complete_ride(conn, ride["id"], rider)
    await feedback_service.create_feedback(
        conn, passenger, schemas.FeedbackCreate(ride_id=ride["id"], to_user_id=rider, rating=4)
    )

    assert await user_service.get_user_stats(conn, rider) == {
        "rides_created": 2,
        "rides_joined": 0,
        "average_rating": 4.0,
        "total_feedbacks": 1,
    }
    stats = await user_service.get_user_stats(conn, passenger)
    assert stats["rides_joined"] == 1
    assert stats["total_feedbacks"] == 0
    assert stats["average_rating"] == 0.0


async def test_addresses_are_private_to_owner(engine, conn):
    owner = await make_user(engine, "9833333331", "Owner")
    other = await make_user(engine, "9833333332", "Other")

    home = await address_service.create_address(
        conn, owner, schemas.AddressCreate(title="Home", details={"line1": "12 FC Road", "city": "Pune"})
    )
    assert home["details"]["line1"] == "12 FC Road"
    assert [a["id"] for a in await address_service.list_addresses(conn, owner)] == [home["id"]]
    assert await address_service.list_addresses(conn, other) == []

    with pytest.raises(Forbidden):
        await address_service.get_address(conn, home["id"], other)
    with pytest.raises(Forbidden):
        await address_service.delete_address(conn, home["id"], other)

    renamed = await address_service.update_address(conn, home["id"], owner, schemas.AddressUpdate(title="Flat"))
    assert renamed["title"] == "Flat"
    assert renamed["details"]["city"] == "Pune"

    await address_service.delete_address(conn, home["id"], owner)
    with pytest.raises(NotFound):
        await address_service.get_address(conn, home["id"], owner)
