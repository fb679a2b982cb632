import pytest
from asgiref.sync import async_to_sync
from channels.db import database_sync_to_async
from channels.testing import WebsocketCommunicator

from workflow import notifications
from workflow.authentication import issue_tokens
from workflow.consumers import NotificationConsumer

pytestmark = pytest.mark.django_db(transaction=True)


def communicator(token=None):
    path = '/ws/notifications/' if token is None else f'/ws/notifications/?token={token}'
    return WebsocketCommunicator(NotificationConsumer.as_asgi(), path)


async def connect(token):
    client = communicator(token)
    connected, _ = await client.connect()
    assert connected
    hello = await client.receive_json_from()
    assert hello['event'] == 'connected'
    status = await client.receive_json_from()
    assert status['event'] == 'user_status'
    return client


def access_token(user):
    return issue_tokens(user)['token']


@pytest.mark.parametrize('token', [None, 'not-a-jwt'])
def test_rejects_bad_tokens(token, viewer):
    async def scenario():
        client = communicator(token)
        connected, _ = await client.connect()
        assert connected
        closed = await client.receive_output()
        assert closed['type'] == 'websocket.close'
        assert closed['code'] == 4401

    async_to_sync(scenario)()


def test_connect_announces_user(viewer, organization):
    token = access_token(viewer)

    async def scenario():
        client = communicator(token)
        await client.connect()
        hello = await client.receive_json_from()
        status = await client.receive_json_from()
        await client.disconnect()
        return hello, status

    hello, status = async_to_sync(scenario)()

    assert hello['data']['user_id'] == viewer.id
    assert hello['data']['organization_id'] == organization.id
    assert status['data']['status'] == 'online'
    assert not notifications.is_user_online(viewer)


def test_ping(viewer):
    token = access_token(viewer)

    async def scenario():
        client = await connect(token)
        await client.send_json_to({'event': 'ping'})
        reply = await client.receive_json_from()
        await client.send_json_to({'event': 'launch_rockets'})
        error = await client.receive_json_from()
        await client.disconnect()
        return reply, error

    reply, error = async_to_sync(scenario)()

    assert reply['event'] == 'pong'
    assert error == {'event': 'error', 'data': {'message': 'Unknown event: launch_rockets'}}


def test_viewing_reaches_everyone_and_typing_only_colleagues(radiologist, manager):
    radiologist_token, manager_token = access_token(radiologist), access_token(manager)

    async def scenario():
        reader = await connect(radiologist_token)
        watcher = await connect(manager_token)
        joined = await reader.receive_json_from()

        await reader.send_json_to({'event': 'study_viewing', 'data': {'study_id': 7}})
        viewing = await watcher.receive_json_from()
        own_viewing = await reader.receive_json_from()
        await reader.send_json_to({'event': 'report_typing', 'data': {'report_id': 3, 'is_typing': True}})
        typing = await watcher.receive_json_from()
        assert await reader.receive_nothing()

        await reader.disconnect()
        await watcher.disconnect()
        return joined, viewing, own_viewing, typing

    joined, viewing, own_viewing, typing = async_to_sync(scenario)()

    assert joined['event'] == 'user_status'
    assert joined['data']['user_id'] == manager.id
    assert joined['data']['status'] == 'online'
    assert viewing['event'] == 'study_viewing'
    assert viewing['data']['study_id'] == 7
    assert viewing['data']['user_id'] == radiologist.id
    assert own_viewing['event'] == 'study_viewing'
    assert typing['event'] == 'report_typing'
    assert typing['data']['is_typing'] is True


def test_offline_only_after_last_socket(radiologist, manager):
    radiologist_token, manager_token = access_token(radiologist), access_token(manager)

    async def scenario():
        watcher = await connect(manager_token)
        first = await connect(radiologist_token)
        second = await connect(radiologist_token)
        for _ in range(2):
            await watcher.receive_json_from()
        await first.receive_json_from()

        await first.disconnect()
        assert await watcher.receive_nothing()
        await second.disconnect()
        offline = await watcher.receive_json_from()
        await watcher.disconnect()
        return offline

    offline = async_to_sync(scenario)()

    assert offline['event'] == 'user_status'
    assert offline['data']['user_id'] == radiologist.id
    assert offline['data']['status'] == 'offline'


def test_receives_personal_notifications(radiologist, make_study):
    token = access_token(radiologist)
    study = make_study()

    async def scenario():
        client = await connect(token)
        await database_sync_to_async(notifications.notify_study_assigned)(study, radiologist)
        pushed = await client.receive_json_from()
        await client.disconnect()
        return pushed

    pushed = async_to_sync(scenario)()

    assert pushed['event'] == 'notification'
    assert pushed['data']['type'] == 'study_assigned'
    assert pushed['data']['data']['study_id'] == study.id
