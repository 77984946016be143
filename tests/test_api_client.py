import unittest
from unittest.mock import Mock

from utils.api_client import ApiClient, ApiError, SessionExpiredError, CATALOG_CACHE_SECONDS


def response(status=200, payload=None):
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = payload if payload is not None else {}
    return resp


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestApiClient(unittest.TestCase):
    def setUp(self):
        self.session = Mock()
        self.clock = FakeClock()
        self.client = ApiClient('http://api.test/', session=self.session, clock=self.clock)

    def login(self):
        self.session.request.return_value = response(payload={
            'token': 'access-1', 'refreshToken': 'refresh-1', 'user': {'id': 7}
        })
        self.client.login('student@example.com', 'secret123')
        self.session.request.reset_mock()

    def test_login_stores_tokens(self):
        self.login()
        self.assertTrue(self.client.is_authenticated)
        self.assertEqual(self.client.user, {'id': 7})
        self.assertEqual(self.client.refresh_token, 'refresh-1')

    def test_requests_carry_bearer_token(self):
        self.login()
        self.session.request.return_value = response(payload={'success': True})
        self.client.get('/api/user/enrollments')
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ('GET', 'http://api.test/api/user/enrollments'))
        self.assertEqual(kwargs['headers'], {'Authorization': 'Bearer access-1'})

    def test_401_refreshes_once_and_retries(self):
        self.login()
        self.session.request.side_effect = [
            response(401, {'message': 'Token has expired'}),
            response(payload={'token': 'access-2', 'refreshToken': 'refresh-1'}),
            response(payload={'success': True, 'progress': 50}),
        ]
        data = self.client.save_progress(3, time_spent=30)
        self.assertEqual(data['progress'], 50)
        self.assertEqual(self.client.access_token, 'access-2')

        calls = self.session.request.call_args_list
        self.assertEqual(calls[1].args[1], 'http://api.test/api/auth/refresh-token')
        self.assertEqual(calls[1].kwargs['json'], {'refreshToken': 'refresh-1'})
        self.assertEqual(calls[2].kwargs['headers'], {'Authorization': 'Bearer access-2'})
        self.assertEqual(calls[2].kwargs['json'], {'timeSpent': 30, 'lastPosition': 0})

    def test_failed_refresh_expires_session(self):
        self.login()
        self.session.request.side_effect = [
            response(401, {'message': 'Token has expired'}),
            response(401, {'message': 'Token has been revoked'}),
        ]
        with self.assertRaises(SessionExpiredError):
            self.client.get('/api/user/enrollments')
        self.assertFalse(self.client.is_authenticated)
        self.assertIsNone(self.client.refresh_token)

    def test_refresh_server_error_keeps_session(self):
        self.login()
        self.session.request.side_effect = [
            response(401, {'message': 'Token has expired'}),
            response(503, {'message': 'Service unavailable'}),
        ]
        with self.assertRaises(ApiError) as ctx:
            self.client.get('/api/user/enrollments')
        self.assertNotIsInstance(ctx.exception, SessionExpiredError)
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(self.client.access_token, 'access-1')
        self.assertEqual(self.client.refresh_token, 'refresh-1')

    def test_refresh_bad_request_expires_session(self):
        self.login()
        self.session.request.side_effect = [
            response(401, {'message': 'Token has expired'}),
            response(400, {'message': 'Refresh token is required'}),
        ]
        with self.assertRaises(SessionExpiredError):
            self.client.get('/api/user/enrollments')
        self.assertFalse(self.client.is_authenticated)

    def test_second_401_is_not_retried_again(self):
        self.login()
        self.session.request.side_effect = [
            response(401, {'message': 'Token has expired'}),
            response(payload={'token': 'access-2'}),
            response(401, {'message': 'Invalid token'}),
        ]
        with self.assertRaises(ApiError) as ctx:
            self.client.get('/api/user/enrollments')
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(self.session.request.call_count, 3)

    def test_concurrent_refresh_reuses_new_token(self):
        self.login()
        self.client.access_token = 'access-2'
        self.assertEqual(self.client.refresh_access_token(stale_token='access-1'), 'access-2')
        self.session.request.assert_not_called()

    def test_anonymous_401_is_raised(self):
        self.session.request.return_value = response(401, {'message': 'Authentication required'})
        with self.assertRaises(ApiError) as ctx:
            self.client.get('/api/user/enrollments')
        self.assertEqual(str(ctx.exception), 'Authentication required')
        self.assertEqual(self.session.request.call_count, 1)

    def test_error_without_json_body(self):
        resp = response(502)
        resp.json.side_effect = ValueError('no json')
        self.session.request.return_value = resp
        with self.assertRaises(ApiError) as ctx:
            self.client.get('/health')
        self.assertEqual(str(ctx.exception), 'HTTP 502')

    def test_catalog_is_cached_for_five_minutes(self):
        self.session.request.return_value = response(payload={'courses': [{'id': 1}]})
        first = self.client.get_courses(category='web')
        self.client.get_courses(category='web')
        self.assertEqual(self.session.request.call_count, 1)
        self.assertEqual(first['courses'], [{'id': 1}])
        self.assertEqual(self.session.request.call_args.kwargs['params'], {'category': 'web'})

        self.client.get_courses(category='data')
        self.assertEqual(self.session.request.call_count, 2)

        self.clock.now += CATALOG_CACHE_SECONDS + 1
        self.client.get_courses(category='web')
        self.assertEqual(self.session.request.call_count, 3)

        self.client.get_courses(force_refresh=True, category='web')
        self.assertEqual(self.session.request.call_count, 4)

    def test_logout_clears_session_even_on_error(self):
        self.login()
        self.session.request.return_value = response(500, {'message': 'boom'})
        self.client.logout()
        self.assertFalse(self.client.is_authenticated)


if __name__ == '__main__':
    unittest.main()
