import logging
from urllib.parse import parse_qs

from asgiref.sync import async_to_sync
from channels.generic.websocket import JsonWebsocketConsumer
from django.utils import timezone

from . import notifications
from .authentication import TokenError, authenticate_token

logger = logging.getLogger(__name__)

UNAUTHORIZED_CLOSE_CODE = 4401


class NotificationConsumer(JsonWebsocketConsumer):
    """Per-user socket joined to its organization, user and role groups."""

    def connect(self):
        self.user = None
        self.groups_joined = []
        token = parse_qs(self.scope.get('query_string', b'').decode()).get('token', [''])[0]
        if not token:
            logger.info("Websocket rejected: no token")
            self.reject()
            return
        try:
            user, _ = authenticate_token(token)
        except TokenError as e:
            logger.info(f"Websocket rejected: {e}")
            self.reject()
            return

        self.user = user
        self.org_id = user.profile.organization_id
        self.role = user.profile.role
        self.groups_joined = [
            notifications.org_group(self.org_id),
            notifications.user_group(user.id),
            notifications.role_group(self.org_id, self.role),
        ]
        self.accept()
        for group in self.groups_joined:
            async_to_sync(self.channel_layer.group_add)(group, self.channel_name)

        notifications.mark_online(self.org_id, user.id)
        logger.info(f"User {user.id} connected via websocket {self.channel_name}")
        self.send_event('connected', {
            'user_id': user.id,
            'organization_id': self.org_id,
            'timestamp': timezone.now().isoformat(),
        })
        self.broadcast('user_status', {'user_id': user.id, 'status': 'online'})

    def reject(self):
        # accept first so the client receives the close code
        self.accept()
        self.close(code=UNAUTHORIZED_CLOSE_CODE)

    def disconnect(self, code):
        if self.user is None:
            return
        for group in self.groups_joined:
            async_to_sync(self.channel_layer.group_discard)(group, self.channel_name)
        logger.info(f"User {self.user.id} disconnected from websocket {self.channel_name}")
        if notifications.mark_offline(self.org_id, self.user.id):
            self.broadcast('user_status', {'user_id': self.user.id, 'status': 'offline'})

    def receive_json(self, content, **kwargs):
        if not isinstance(content, dict):
            return
        event = content.get('event')
        data = content.get('data') or {}
        if not isinstance(data, dict):
            data = {}

        if event == 'ping':
            self.send_event('pong', {'timestamp': timezone.now().isoformat()})
        elif event == 'user_status':
            self.broadcast('user_status', {'user_id': self.user.id, 'status': data.get('status', 'online')})
        elif event == 'study_viewing':
            self.broadcast('study_viewing', {'user_id': self.user.id, 'study_id': data.get('study_id')})
        elif event == 'report_typing':
            self.broadcast('report_typing', {
                'user_id': self.user.id,
                'report_id': data.get('report_id'),
                'is_typing': bool(data.get('is_typing')),
            }, exclude_self=True)
        else:
            self.send_event('error', {'message': f"Unknown event: {event}"})

    def broadcast(self, event, data, exclude_self=False):
        message = {
            'type': 'broadcast.event',
            'event': event,
            'data': {**data, 'timestamp': timezone.now().isoformat()},
        }
        if exclude_self:
            message['exclude'] = self.channel_name
        async_to_sync(self.channel_layer.group_send)(notifications.org_group(self.org_id), message)

    def broadcast_event(self, message):
        if message.get('exclude') == self.channel_name:
            return
        self.send_event(message['event'], message.get('data'))

    def send_event(self, event, data):
        self.send_json({'event': event, 'data': data})
