import unittest

from tests.base import ApiTestCase
from utils.security_utils import (allowed_file, parse_positive_int, sanitize_input, unique_upload_name,
                                  validate_email, validate_phone)


class TestSecurityMiddleware(ApiTestCase):
    def test_security_headers_are_set(self):
        response = self.client.get('/')
        self.assertEqual(response.headers['X-Frame-Options'], 'DENY')
        self.assertEqual(response.headers['X-Content-Type-Options'], 'nosniff')
        self.assertIn("default-src 'none'", response.headers['Content-Security-Policy'])
        # Testing mode does not force HTTPS
        self.assertNotIn('Strict-Transport-Security', response.headers)

    def test_auth_responses_are_not_cached(self):
        response = self.client.post('/api/auth/login', json={'email': 'nobody@example.com', 'password': 'x'})
        self.assertEqual(response.headers['Cache-Control'], 'no-store')
        self.assertNotIn('Cache-Control', self.client.get('/health').headers)

    def test_path_traversal_is_blocked(self):
        response = self.client.get('/api/courses?image=..%2F..%2Fetc%2Fpasswd')
        self.assertEqual(response.status_code, 403)

    def test_scanner_user_agents_are_blocked(self):
        response = self.client.get('/api/courses', headers={'User-Agent': 'sqlmap/1.7'})
        self.assertEqual(response.status_code, 403)

    def test_injection_patterns_are_blocked(self):
        response = self.client.get('/api/courses?search=1 union select password from users')
        self.assertEqual(response.status_code, 403)


class TestSecurityUtils(unittest.TestCase):
    def test_sanitize_input_escapes_markup(self):
        self.assertEqual(sanitize_input('  <b>Tom & "Jerry"</b> '),
                         '&lt;b&gt;Tom &amp; &quot;Jerry&quot;&lt;/b&gt;')
        self.assertIsNone(sanitize_input(None))

    def test_phone_and_email_validation(self):
        self.assertTrue(validate_phone('+84 901 234 567'))
        self.assertTrue(validate_phone('(090) 123-4567'))
        self.assertFalse(validate_phone('090-CALL-NOW'))
        self.assertFalse(validate_phone('12345'))
        self.assertTrue(validate_email('student@campus.edu.vn'))
        self.assertFalse(validate_email('student@campus'))

    def test_upload_names(self):
        self.assertTrue(allowed_file('Report.PDF'))
        self.assertFalse(allowed_file('payload.exe'))
        name = unique_upload_name('../../my report.PDF')
        self.assertRegex(name, r'^my_report_[0-9a-f]{12}\.pdf$')

    def test_parse_positive_int(self):
        self.assertEqual(parse_positive_int('5', 1), 5)
        self.assertEqual(parse_positive_int('-3', 1), 1)
        self.assertEqual(parse_positive_int('abc', 12), 12)
        self.assertEqual(parse_positive_int('500', 12, maximum=100), 100)


class TestErrorHandlers(ApiTestCase):
    def test_unknown_route_returns_json_404(self):
        response = self.client.get('/api/does-not-exist')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {'success': False, 'message': 'Resource not found'})

    def test_wrong_method_returns_json_405(self):
        response = self.client.delete('/api/courses')
        self.assertEqual(response.status_code, 405)
        self.assertFalse(response.get_json()['success'])


class TestMainRoutes(ApiTestCase):
    def test_index_and_health(self):
        self.assertEqual(self.client.get('/').get_json()['service'], 'CampusLearning API')
        response = self.client.get('/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['status'], 'healthy')
        self.assertEqual(response.get_json()['database'], 'ok')

    def test_public_stats(self):
        teacher_id = self.create_user(email='teacher@example.com', role='TEACHER')
        student_id = self.create_user()
        course_id = self.create_course(teacher_id)
        self.create_course(teacher_id, title='Draft', published=False)
        self.enroll(student_id, course_id, status='completed', progress=100)

        stats = self.client.get('/api/stats').get_json()['stats']
        self.assertEqual(stats, {'courses': 1, 'students': 1, 'teachers': 1, 'completions': 1})


class TestCommands(ApiTestCase):
    def test_create_admin_command(self):
        runner = self.app.test_cli_runner()
        result = runner.invoke(args=['create-admin', 'root@example.com', 'secret123', '--name', 'Root'])
        self.assertEqual(result.exit_code, 0, result.output)
        user = self.query_one('SELECT * FROM users WHERE email = ?', ('root@example.com',))
        self.assertEqual(user['role'], 'ADMIN')
        self.assertEqual(user['full_name'], 'Root')

        result = runner.invoke(args=['create-admin', 'root@example.com', 'secret123'])
        self.assertNotEqual(result.exit_code, 0)

    def test_init_db_command(self):
        result = self.app.test_cli_runner().invoke(args=['init-db'])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn('Initialized database', result.output)


if __name__ == '__main__':
    unittest.main()
