import io
import os
import unittest

from tests.base import ApiTestCase
from blueprints.assignment_routes import parse_due_date, AssignmentInputError


class TestDueDates(unittest.TestCase):
    def test_parse_due_date_normalizes_to_utc(self):
        self.assertEqual(parse_due_date('2030-05-01T10:00:00+07:00'), '2030-05-01 03:00:00')
        self.assertEqual(parse_due_date('2030-05-01T10:00:00Z'), '2030-05-01 10:00:00')
        self.assertEqual(parse_due_date('2030-05-01'), '2030-05-01 00:00:00')
        self.assertIsNone(parse_due_date(''))
        with self.assertRaises(AssignmentInputError):
            parse_due_date('next friday')


class AssignmentTestCase(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.teacher_id = self.create_user(email='teacher@example.com', role='TEACHER')
        self.student_id = self.create_user(email='student@example.com')
        self.course_id = self.create_course(self.teacher_id, title='Algorithms')
        self.teacher = self.auth(self.teacher_id, 'TEACHER')
        self.student = self.auth(self.student_id)

    def upload_path(self, relative_path):
        return os.path.join(self.app.config['UPLOAD_FOLDER'], relative_path)

    def add_assignment(self, due_date=None, total_points=100):
        return self.execute('''
            INSERT INTO assignments (course_id, title, description, due_date, total_points, created_by)
            VALUES (?, 'Homework 1', 'Sort a list', ?, ?, ?)
        ''', (self.course_id, due_date, total_points, self.teacher_id))


class TestTeacherAssignments(AssignmentTestCase):
    def test_create_with_files(self):
        response = self.client.post('/api/teacher/assignments', data={
            'title': 'Homework 1',
            'courseId': str(self.course_id),
            'dueDate': '2030-05-01T10:00:00Z',
            'totalPoints': '50',
            'files': [(io.BytesIO(b'%PDF brief'), 'brief.pdf'), (io.BytesIO(b'data'), 'data.csv')],
        }, headers=self.teacher, content_type='multipart/form-data')
        self.assertEqual(response.status_code, 201)
        assignment = response.get_json()['assignment']
        self.assertEqual(assignment['due_date'], '2030-05-01 10:00:00')
        self.assertEqual(assignment['total_points'], 50)
        self.assertEqual([f['file_name'] for f in assignment['files']], ['brief.pdf', 'data.csv'])
        for file_info in assignment['files']:
            self.assertTrue(file_info['file_path'].startswith(os.path.join('assignments', str(assignment['id']))))
            self.assertTrue(os.path.exists(self.upload_path(file_info['file_path'])))

    def test_create_rejects_bad_uploads(self):
        response = self.client.post('/api/teacher/assignments', data={
            'title': 'Homework', 'courseId': str(self.course_id), 'files': [(io.BytesIO(b'MZ'), 'virus.exe')]
        }, headers=self.teacher, content_type='multipart/form-data')
        self.assertEqual(response.status_code, 400)

        self.app.config['MAX_FILES_PER_REQUEST'] = 1
        response = self.client.post('/api/teacher/assignments', data={
            'title': 'Homework', 'courseId': str(self.course_id),
            'files': [(io.BytesIO(b'a'), 'a.txt'), (io.BytesIO(b'b'), 'b.txt')]
        }, headers=self.teacher, content_type='multipart/form-data')
        self.assertEqual(response.status_code, 400)

        self.app.config['MAX_FILE_SIZE'] = 4
        response = self.client.post('/api/teacher/assignments', data={
            'title': 'Homework', 'courseId': str(self.course_id), 'files': [(io.BytesIO(b'too large'), 'a.txt')]
        }, headers=self.teacher, content_type='multipart/form-data')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.query('SELECT * FROM assignments'), [])

    def test_create_accepts_full_upload_allowance(self):
        max_size = self.app.config['MAX_FILE_SIZE']
        files = [(io.BytesIO(b'\0' * max_size), f'chapter{i}.pdf')
                 for i in range(self.app.config['MAX_FILES_PER_REQUEST'])]
        response = self.client.post('/api/teacher/assignments', data={
            'title': 'Reading pack', 'courseId': str(self.course_id), 'files': files,
        }, headers=self.teacher, content_type='multipart/form-data')
        self.assertEqual(response.status_code, 201)
        self.assertEqual([f['file_size'] for f in response.get_json()['assignment']['files']], [max_size] * 5)

    def test_text_fields_must_be_strings(self):
        response = self.client.post('/api/teacher/assignments', json={
            'title': 'Homework', 'courseId': self.course_id, 'description': ['not', 'text']
        }, headers=self.teacher)
        self.assertEqual(response.status_code, 400)
        response = self.client.post('/api/teacher/assignments', json={'title': 7, 'courseId': self.course_id},
                                    headers=self.teacher)
        self.assertEqual(response.status_code, 400)

        assignment_id = self.add_assignment()
        response = self.client.put(f'/api/teacher/assignments/{assignment_id}', json={'description': 42},
                                   headers=self.teacher)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.query_one('SELECT description FROM assignments WHERE id = ?',
                                        (assignment_id,))['description'], 'Sort a list')

    def test_create_requires_course_ownership(self):
        other_id = self.create_user(email='other@example.com', role='TEACHER')
        response = self.client.post('/api/teacher/assignments', json={'title': 'Nope', 'courseId': self.course_id},
                                    headers=self.auth(other_id, 'TEACHER'))
        self.assertEqual(response.status_code, 403)
        response = self.client.post('/api/teacher/assignments', json={'title': 'Nope'}, headers=self.teacher)
        self.assertEqual(response.status_code, 400)

    def test_update_list_and_delete(self):
        response = self.client.post('/api/teacher/assignments', data={
            'title': 'Homework 1', 'courseId': str(self.course_id), 'files': [(io.BytesIO(b'brief'), 'brief.txt')]
        }, headers=self.teacher, content_type='multipart/form-data')
        assignment = response.get_json()['assignment']
        file_path = self.upload_path(assignment['files'][0]['file_path'])

        response = self.client.put(f"/api/teacher/assignments/{assignment['id']}", json={'title': 'Homework 1b'},
                                   headers=self.teacher)
        self.assertEqual(response.get_json()['assignment']['title'], 'Homework 1b')

        self.enroll(self.student_id, self.course_id)
        assignments = self.client.get('/api/teacher/assignments', headers=self.teacher).get_json()['assignments']
        self.assertEqual(assignments[0]['student_count'], 1)
        self.assertEqual(assignments[0]['submission_count'], 0)

        response = self.client.delete(f"/api/teacher/assignments/{assignment['id']}", headers=self.teacher)
        self.assertEqual(response.status_code, 200)
        self.assertFalse(os.path.exists(file_path))
        self.assertEqual(self.query('SELECT * FROM assignment_files'), [])

    def test_delete_single_file(self):
        response = self.client.post('/api/teacher/assignments', data={
            'title': 'Homework 1', 'courseId': str(self.course_id), 'files': [(io.BytesIO(b'brief'), 'brief.txt')]
        }, headers=self.teacher, content_type='multipart/form-data')
        file_info = response.get_json()['assignment']['files'][0]

        response = self.client.delete(f"/api/teacher/assignments/files/{file_info['id']}", headers=self.teacher)
        self.assertEqual(response.status_code, 200)
        self.assertFalse(os.path.exists(self.upload_path(file_info['file_path'])))
        response = self.client.delete(f"/api/teacher/assignments/files/{file_info['id']}", headers=self.teacher)
        self.assertEqual(response.status_code, 404)

    def test_assign_notifies_active_students(self):
        assignment_id = self.add_assignment()
        response = self.client.post(f'/api/teacher/assignments/{assignment_id}/assign', json={}, headers=self.teacher)
        self.assertEqual(response.status_code, 400)

        self.enroll(self.student_id, self.course_id)
        response = self.client.post(f'/api/teacher/assignments/{assignment_id}/assign',
                                    json={'dueDate': '2030-01-01T00:00:00Z'}, headers=self.teacher)
        body = response.get_json()
        self.assertEqual(body['studentCount'], 1)
        self.assertEqual(body['dueDate'], '2030-01-01 00:00:00')
        notification = self.query_one("SELECT * FROM notifications WHERE type = 'assignment'")
        self.assertEqual(notification['user_id'], self.student_id)
        self.assertIn('Homework 1', notification['content'])


class TestSubmissionsAndGrading(AssignmentTestCase):
    def setUp(self):
        super().setUp()
        self.enroll(self.student_id, self.course_id)

    def submit(self, assignment_id, filename='answer.py', body=b'print(1)', content='See attached'):
        return self.client.post(f'/api/assignments/{assignment_id}/submit', data={
            'content': content, 'file': (io.BytesIO(body), filename)
        }, headers=self.student, content_type='multipart/form-data')

    def test_student_sees_course_assignments(self):
        self.add_assignment(due_date='2030-01-01 00:00:00')
        other_course = self.create_course(self.teacher_id, title='Other')
        self.execute("INSERT INTO assignments (course_id, title) VALUES (?, 'Hidden')", (other_course,))

        assignments = self.client.get('/api/assignments', headers=self.student).get_json()['assignments']
        self.assertEqual([a['title'] for a in assignments], ['Homework 1'])
        self.assertIsNone(assignments[0]['submission_id'])

    def test_submission_requires_enrollment_and_content(self):
        assignment_id = self.add_assignment()
        outsider = self.create_user(email='outsider@example.com')
        response = self.client.post(f'/api/assignments/{assignment_id}/submit', json={'content': 'hi'},
                                    headers=self.auth(outsider))
        self.assertEqual(response.status_code, 403)
        response = self.client.post(f'/api/assignments/{assignment_id}/submit', json={'content': '  '},
                                    headers=self.student)
        self.assertEqual(response.status_code, 400)
        response = self.client.post('/api/assignments/9999/submit', json={'content': 'hi'}, headers=self.student)
        self.assertEqual(response.status_code, 404)

    def test_submission_content_must_be_text(self):
        assignment_id = self.add_assignment()
        response = self.client.post(f'/api/assignments/{assignment_id}/submit', json={'content': 42},
                                    headers=self.student)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()['message'], 'content must be a string')
        self.assertEqual(self.query('SELECT * FROM assignment_submissions'), [])

    def test_late_submissions_are_flagged(self):
        past = self.add_assignment(due_date='2000-01-01 00:00:00')
        future = self.add_assignment(due_date='2999-01-01 00:00:00')
        self.assertEqual(self.submit(past).get_json()['submission']['is_late'], 1)
        self.assertEqual(self.submit(future).get_json()['submission']['is_late'], 0)

    def test_resubmission_replaces_file_and_resets_grade(self):
        assignment_id = self.add_assignment()
        first = self.submit(assignment_id).get_json()['submission']
        first_path = self.upload_path(first['file_path'])
        self.assertTrue(os.path.exists(first_path))

        response = self.client.post(f"/api/teacher/assignments/submissions/{first['id']}/grade",
                                    json={'score': 90, 'feedback': 'Nice'}, headers=self.teacher)
        self.assertEqual(response.get_json()['submission']['status'], 'graded')

        second = self.submit(assignment_id, filename='answer_v2.py').get_json()['submission']
        self.assertEqual(second['id'], first['id'])
        self.assertEqual(second['status'], 'submitted')
        self.assertIsNone(second['score'])
        self.assertFalse(os.path.exists(first_path))
        self.assertTrue(os.path.exists(self.upload_path(second['file_path'])))

    def test_grading(self):
        assignment_id = self.add_assignment(total_points=20)
        submission = self.submit(assignment_id).get_json()['submission']
        url = f"/api/teacher/assignments/submissions/{submission['id']}/grade"

        self.assertEqual(self.client.post(url, json={}, headers=self.teacher).status_code, 400)
        self.assertEqual(self.client.post(url, json={'score': 25}, headers=self.teacher).status_code, 400)
        self.assertEqual(self.client.post(url, json={'score': 15}, headers=self.student).status_code, 403)

        response = self.client.post(url, json={'score': 15, 'feedback': 'Good'}, headers=self.teacher)
        self.assertEqual(response.status_code, 200)
        graded = response.get_json()['submission']
        self.assertEqual(graded['score'], 15)
        self.assertEqual(graded['graded_by'], self.teacher_id)

        notification = self.query_one("SELECT * FROM notifications WHERE type = 'grade'")
        self.assertEqual(notification['user_id'], self.student_id)
        self.assertIn('15/20', notification['content'])

        submissions = self.client.get(f'/api/teacher/assignments/{assignment_id}/submissions',
                                      headers=self.teacher).get_json()['submissions']
        self.assertEqual(submissions[0]['email'], 'student@example.com')


if __name__ == '__main__':
    unittest.main()
