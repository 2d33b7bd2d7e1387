#!/usr/bin/env python3
"""
Tests for push providers.

The HTTP layer is mocked; these check request shape, response mapping and
that every failure surfaces as a ProviderError subclass.
"""

import unittest
from unittest.mock import Mock

import requests

from core.config_loader import ProviderConfig
from database.models import SubscriptionState
from notification.dto import GroupingMetadata, PushPayload
from notification.exceptions import ProviderError, ProviderNotConfigured, ProviderTimeout, RateLimitError
from notification.provider import (
    DryRunProvider,
    OneSignalProvider,
    build_provider,
    subscription_state_from_player,
)


def _response(status=200, body=None, headers=None):
    response = Mock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.json.return_value = body if body is not None else {}
    response.headers = headers or {}
    response.text = str(body)
    return response


class TestSubscriptionState(unittest.TestCase):

    def test_positive_notification_types_is_subscribed(self):
        self.assertEqual(subscription_state_from_player({'notification_types': 1}), SubscriptionState.SUBSCRIBED)

    def test_negative_notification_types_is_unsubscribed(self):
        self.assertEqual(subscription_state_from_player({'notification_types': -2}), SubscriptionState.UNSUBSCRIBED)
        self.assertEqual(subscription_state_from_player({'notification_types': 0}), SubscriptionState.UNSUBSCRIBED)

    def test_token_without_signal_is_pending(self):
        player = {'identifier': 'apns-token', 'notification_types': None}
        self.assertEqual(subscription_state_from_player(player), SubscriptionState.PENDING)

    def test_invalid_identifier_wins(self):
        player = {'identifier': 'apns-token', 'notification_types': 1, 'invalid_identifier': True}
        self.assertEqual(subscription_state_from_player(player), SubscriptionState.UNSUBSCRIBED)

    def test_no_token_and_no_signal_is_unsubscribed(self):
        self.assertEqual(subscription_state_from_player({}), SubscriptionState.UNSUBSCRIBED)


class TestOneSignalProvider(unittest.TestCase):

    def setUp(self):
        self.http = Mock()
        self.provider = OneSignalProvider(
            app_id='app-123',
            api_key='secret',
            timeout_seconds=5,
            session=self.http,
        )
        self.payload = PushPayload(title='GOAL!', body="Saka 52'", data={'fixture': 1234}, url=None)
        self.grouping = GroupingMetadata(collapse_id='goal:1234', thread_id='match:1234', platform_group='totl_scores')

    def test_send_builds_grouped_payload(self):
        self.http.request.return_value = _response(body={'id': 'notif-1', 'recipients': 2})

        result = self.provider.send(['p1', 'p2'], self.payload, self.grouping)

        self.assertEqual(result.notification_id, 'notif-1')
        self.assertEqual(result.recipients, 2)
        method, url = self.http.request.call_args[0]
        kwargs = self.http.request.call_args[1]
        self.assertEqual(method, 'POST')
        self.assertEqual(url, 'https://onesignal.com/api/v1/notifications')
        self.assertEqual(kwargs['timeout'], 5)
        self.assertEqual(kwargs['headers']['Authorization'], 'Basic secret')
        body = kwargs['json']
        self.assertEqual(body['include_player_ids'], ['p1', 'p2'])
        self.assertEqual(body['headings'], {'en': 'GOAL!'})
        self.assertEqual(body['collapse_id'], 'goal:1234')
        self.assertEqual(body['thread_id'], 'match:1234')
        self.assertEqual(body['android_group'], 'totl_scores')
        self.assertNotIn('url', body)

    def test_send_missing_credentials(self):
        provider = OneSignalProvider(app_id=None, api_key=None, session=self.http)
        self.assertFalse(provider.validate_config())
        with self.assertRaises(ProviderNotConfigured):
            provider.send(['p1'], self.payload, self.grouping)
        self.http.request.assert_not_called()

    def test_send_timeout(self):
        self.http.request.side_effect = requests.exceptions.Timeout()
        with self.assertRaises(ProviderTimeout) as ctx:
            self.provider.send(['p1'], self.payload, self.grouping)
        self.assertEqual(ctx.exception.detail['message'], 'timeout')
        self.assertEqual(self.http.request.call_count, 1)

    def test_send_rate_limited(self):
        self.http.request.return_value = _response(status=429, body={'errors': ['rate limited']}, headers={'Retry-After': '30'})
        with self.assertRaises(RateLimitError) as ctx:
            self.provider.send(['p1'], self.payload, self.grouping)
        self.assertEqual(ctx.exception.retry_after, 30)
        self.assertEqual(ctx.exception.detail['status'], 429)

    def test_send_server_error(self):
        self.http.request.return_value = _response(status=503, body={'errors': ['unavailable']})
        with self.assertRaises(ProviderError) as ctx:
            self.provider.send(['p1'], self.payload, self.grouping)
        self.assertEqual(ctx.exception.detail['status'], 503)

    def test_send_no_subscribed_players(self):
        self.http.request.return_value = _response(body={'id': '', 'errors': ['All included players are not subscribed']})
        with self.assertRaises(ProviderError) as ctx:
            self.provider.send(['p1'], self.payload, self.grouping)
        self.assertIn('not subscribed', str(ctx.exception))

    def test_send_partial_invalid_players(self):
        self.http.request.return_value = _response(
            body={'id': 'notif-2', 'recipients': 1, 'errors': {'invalid_player_ids': ['p2']}}
        )
        result = self.provider.send(['p1', 'p2'], self.payload, self.grouping)
        self.assertEqual(result.notification_id, 'notif-2')
        self.assertEqual(result.invalid_device_ids, ['p2'])

    def test_send_rejects_oversized_batch(self):
        with self.assertRaises(ValueError):
            self.provider.send([f'p{i}' for i in range(2001)], self.payload, self.grouping)

    def test_get_device_state(self):
        self.http.request.return_value = _response(body={
            'id': 'p1',
            'identifier': 'token',
            'notification_types': 1,
            'external_user_id': 'user-1',
            'last_active': 1755349200,
            'session_count': 12,
        })

        state = self.provider.get_device_state('p1')

        self.assertEqual(state.subscription, SubscriptionState.SUBSCRIBED)
        self.assertTrue(state.subscribed)
        self.assertEqual(state.external_user_id, 'user-1')
        self.assertEqual(state.last_active_at.year, 2025)
        self.assertEqual(self.http.request.call_args[1]['params'], {'app_id': 'app-123'})

    def test_get_device_state_unknown_device(self):
        self.http.request.return_value = _response(status=404, body={'errors': ['No user with this id found']})
        state = self.provider.get_device_state('gone')
        self.assertTrue(state.invalid)
        self.assertFalse(state.subscribed)

    def test_get_device_state_non_json_body(self):
        response = _response(body={})
        response.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
        response.text = "<html>Bad Gateway</html>"
        self.http.request.return_value = response

        with self.assertRaises(ProviderError) as ctx:
            self.provider.get_device_state('p1')
        self.assertIn('reason', ctx.exception.detail)

    def test_get_device_state_malformed_fields(self):
        self.http.request.return_value = _response(body={
            'identifier': 'token',
            'notification_types': 1,
            'last_active': 'yesterday',
        })
        with self.assertRaises(ProviderError):
            self.provider.get_device_state('p1')

    def test_register_device_sets_external_user_id(self):
        self.http.request.return_value = _response(body={'success': True})
        self.provider.register_device('p1', 'user-1')
        method, url = self.http.request.call_args[0]
        self.assertEqual(method, 'PUT')
        self.assertTrue(url.endswith('/players/p1'))
        self.assertEqual(self.http.request.call_args[1]['json']['external_user_id'], 'user-1')


class TestBuildProvider(unittest.TestCase):

    def test_dry_run(self):
        provider = build_provider(ProviderConfig(type='dry_run'))
        self.assertIsInstance(provider, DryRunProvider)
        result = provider.send(['p1'], PushPayload(title='t', body='b'), GroupingMetadata())
        self.assertTrue(result.notification_id.startswith('dry-run-'))
        self.assertEqual(len(provider.sent), 1)

    def test_onesignal(self):
        provider = build_provider(ProviderConfig(type='onesignal', app_id='a', api_key='k', timeout_seconds=3))
        self.assertIsInstance(provider, OneSignalProvider)
        self.assertEqual(provider.timeout_seconds, 3)
        self.assertTrue(provider.validate_config())


if __name__ == '__main__':
    unittest.main()
