import unittest

from tests.base import ApiTestCase


class TeacherTestCase(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.teacher_id = self.create_user(email='teacher@example.com', role='TEACHER', full_name='Jane Teacher')
        self.other_teacher_id = self.create_user(email='other.teacher@example.com', role='TEACHER')
        self.admin_id = self.create_user(email='admin@example.com', role='ADMIN')
        self.student_id = self.create_user(email='student@example.com', full_name='Sam Student')
        self.teacher = self.auth(self.teacher_id, 'TEACHER')
        self.other_teacher = self.auth(self.other_teacher_id, 'TEACHER')
        self.admin = self.auth(self.admin_id, 'ADMIN')


class TestTeacherCourses(TeacherTestCase):
    def test_students_cannot_use_teacher_api(self):
        response = self.client.get('/api/teacher/courses', headers=self.auth(self.student_id))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.client.get('/api/teacher/courses').status_code, 401)

    def test_create_course_starts_as_draft(self):
        response = self.client.post('/api/teacher/courses', json={
            'title': 'Flask in Depth', 'price': '450000', 'status': 'published', 'category': 'web'
        }, headers=self.teacher)
        self.assertEqual(response.status_code, 201)
        course = response.get_json()['course']
        self.assertEqual(course['status'], 'draft')
        self.assertEqual(course['is_published'], 0)
        self.assertEqual(course['instructor_id'], self.teacher_id)
        self.assertEqual(course['price'], 450000)

    def test_create_course_validation(self):
        self.assertEqual(self.client.post('/api/teacher/courses', json={}, headers=self.teacher).status_code, 400)
        response = self.client.post('/api/teacher/courses', json={'title': 'Bad', 'price': -5}, headers=self.teacher)
        self.assertEqual(response.status_code, 400)

    def test_list_is_scoped_to_instructor(self):
        self.create_course(self.teacher_id, title='Mine')
        self.create_course(self.other_teacher_id, title='Theirs')

        body = self.client.get('/api/teacher/courses', headers=self.teacher).get_json()
        self.assertEqual([course['title'] for course in body['courses']], ['Mine'])
        self.assertEqual(body['pagination']['totalCount'], 1)

        body = self.client.get('/api/teacher/courses', headers=self.admin).get_json()
        self.assertEqual(len(body['courses']), 2)

    def test_publish_and_soft_delete(self):
        course_id = self.create_course(self.teacher_id, title='Draft', published=False)
        response = self.client.put(f'/api/teacher/courses/{course_id}', json={'status': 'published'},
                                   headers=self.teacher)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['course']['is_published'], 1)
        self.assertEqual(self.client.get(f'/api/courses/{course_id}').status_code, 200)

        response = self.client.put(f'/api/teacher/courses/{course_id}', json={'status': 'live'}, headers=self.teacher)
        self.assertEqual(response.status_code, 400)

        self.assertEqual(self.client.delete(f'/api/teacher/courses/{course_id}', headers=self.teacher).status_code, 200)
        self.assertIsNotNone(self.query_one('SELECT deleted_at FROM courses WHERE id = ?', (course_id,))['deleted_at'])
        self.assertEqual(self.client.get(f'/api/courses/{course_id}').status_code, 404)
        self.assertEqual(self.client.get(f'/api/teacher/courses/{course_id}', headers=self.teacher).status_code, 404)

    def test_other_teachers_cannot_manage_course(self):
        course_id = self.create_course(self.teacher_id)
        self.assertEqual(self.client.get(f'/api/teacher/courses/{course_id}', headers=self.other_teacher).status_code,
                         403)
        response = self.client.put(f'/api/teacher/courses/{course_id}', json={'title': 'Hijacked'},
                                   headers=self.other_teacher)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.client.get(f'/api/teacher/courses/{course_id}', headers=self.admin).status_code, 200)

    def test_course_detail_includes_modules_and_enrollments(self):
        course_id = self.create_course(self.teacher_id)
        module_id = self.create_module(course_id)
        self.create_lesson(course_id, module_id)
        self.enroll(self.student_id, course_id)

        course = self.client.get(f'/api/teacher/courses/{course_id}', headers=self.teacher).get_json()['course']
        self.assertEqual(course['modules'][0]['lesson_count'], 1)
        self.assertEqual(course['recent_enrollments'][0]['email'], 'student@example.com')


class TestModulesAndLessons(TeacherTestCase):
    def setUp(self):
        super().setUp()
        self.course_id = self.create_course(self.teacher_id)

    def test_module_and_lesson_lifecycle(self):
        response = self.client.post(f'/api/teacher/courses/{self.course_id}/modules', json={'title': 'Basics'},
                                    headers=self.teacher)
        self.assertEqual(response.status_code, 201)
        module_id = response.get_json()['module']['id']
        self.assertEqual(response.get_json()['module']['order_index'], 1)

        response = self.client.post(f'/api/teacher/modules/{module_id}/lessons', json={
            'title': 'Quiz', 'content_type': 'quiz',
            'element_properties': {'question': 'Pick b', 'options': ['a', 'b'], 'correct_answer_index': 1}
        }, headers=self.teacher)
        self.assertEqual(response.status_code, 201)
        lesson = response.get_json()['lesson']
        self.assertEqual(lesson['element_properties']['correct_answer_index'], 1)

        response = self.client.put(f"/api/teacher/lessons/{lesson['id']}", json={'title': 'Final quiz',
                                                                                  'is_preview': True},
                                   headers=self.teacher)
        self.assertEqual(response.get_json()['lesson']['title'], 'Final quiz')
        self.assertTrue(response.get_json()['lesson']['is_preview'])

        lessons = self.client.get(f'/api/teacher/modules/{module_id}/lessons', headers=self.teacher).get_json()['lessons']
        self.assertEqual([item['title'] for item in lessons], ['Final quiz'])

        self.assertEqual(self.client.delete(f"/api/teacher/lessons/{lesson['id']}", headers=self.teacher).status_code,
                         200)
        self.assertEqual(self.client.get(f"/api/teacher/lessons/{lesson['id']}", headers=self.teacher).status_code, 404)

    def test_lesson_validation(self):
        module_id = self.create_module(self.course_id)
        response = self.client.post(f'/api/teacher/modules/{module_id}/lessons', json={'title': 'X',
                                                                                       'content_type': 'podcast'},
                                    headers=self.teacher)
        self.assertEqual(response.status_code, 400)
        response = self.client.post(f'/api/teacher/modules/{module_id}/lessons', json={'content_type': 'text'},
                                    headers=self.teacher)
        self.assertEqual(response.status_code, 400)
        response = self.client.post(f'/api/teacher/modules/{module_id}/lessons', json={'title': 'X'},
                                    headers=self.other_teacher)
        self.assertEqual(response.status_code, 403)

    def test_deleting_a_module_recalculates_progress(self):
        first = self.create_module(self.course_id, title='First')
        second = self.create_module(self.course_id, title='Second', order_index=2)
        done = self.create_lesson(self.course_id, first)
        self.create_lesson(self.course_id, second)
        enrollment_id = self.enroll(self.student_id, self.course_id)
        self.client.post(f'/api/lessons/{done}/progress', json={}, headers=self.auth(self.student_id))
        self.assertEqual(self.query_one('SELECT progress FROM enrollments WHERE id = ?', (enrollment_id,))['progress'], 50)

        response = self.client.delete(f'/api/teacher/modules/{second}', headers=self.teacher)
        self.assertEqual(response.status_code, 200)
        enrollment = self.query_one('SELECT * FROM enrollments WHERE id = ?', (enrollment_id,))
        self.assertEqual(enrollment['progress'], 100)
        self.assertEqual(enrollment['status'], 'completed')


class TestCourseEnrollmentsAndStudents(TeacherTestCase):
    def setUp(self):
        super().setUp()
        self.course_id = self.create_course(self.teacher_id, title='Teacher Course')
        self.other_course = self.create_course(self.other_teacher_id, title='Other Course')
        self.second_student = self.create_user(email='second@example.com', full_name='Alex Learner')
        self.outsider = self.create_user(email='outsider@example.com', full_name='Outside Person')
        self.enroll(self.student_id, self.course_id, progress=0)
        self.enroll(self.second_student, self.course_id, status='completed', progress=100)
        self.enroll(self.outsider, self.other_course)

    def test_enrollment_statistics(self):
        body = self.client.get(f'/api/teacher/courses/{self.course_id}/enrollments', headers=self.teacher).get_json()
        self.assertEqual(body['statistics']['total'], 2)
        self.assertEqual(body['statistics']['completed'], 1)
        self.assertEqual(body['statistics']['not_started'], 1)
        self.assertEqual(body['statistics']['average_progress'], 50)

        body = self.client.get(f'/api/teacher/courses/{self.course_id}/enrollments?status=completed',
                               headers=self.teacher).get_json()
        self.assertEqual([row['email'] for row in body['enrollments']], ['second@example.com'])

    def test_student_list_and_search(self):
        body = self.client.get('/api/teacher/students', headers=self.teacher).get_json()
        self.assertEqual({row['id'] for row in body['students']}, {self.student_id, self.second_student})

        body = self.client.get('/api/teacher/students/search/Alex', headers=self.teacher).get_json()
        self.assertEqual([row['id'] for row in body['students']], [self.second_student])
        self.assertEqual(self.client.get('/api/teacher/students/search/A', headers=self.teacher).status_code, 400)

    def test_student_detail_requires_shared_course(self):
        body = self.client.get(f'/api/teacher/students/{self.student_id}', headers=self.teacher).get_json()
        self.assertNotIn('password_hash', body['student'])
        self.assertEqual(body['enrollments'][0]['course_title'], 'Teacher Course')

        response = self.client.get(f'/api/teacher/students/{self.outsider}', headers=self.teacher)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.client.get('/api/teacher/students/9999', headers=self.teacher).status_code, 404)

    def test_notify_students(self):
        response = self.client.post('/api/teacher/students/notify', json={
            'studentIds': [self.student_id, self.second_student], 'title': 'Reminder', 'content': 'Quiz on Friday',
            'courseId': self.course_id
        }, headers=self.teacher)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['sentCount'], 2)
        rows = self.query("SELECT user_id FROM notifications WHERE type = 'teacher_message' ORDER BY user_id")
        self.assertEqual([row['user_id'] for row in rows], [self.student_id, self.second_student])

    def test_notify_rejects_students_outside_teacher_courses(self):
        response = self.client.post('/api/teacher/students/notify', json={
            'studentIds': [self.student_id, self.outsider], 'title': 'Hi', 'content': 'Hello'
        }, headers=self.teacher)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()['invalidStudentIds'], [self.outsider])
        self.assertEqual(self.query("SELECT * FROM notifications WHERE type = 'teacher_message'"), [])


if __name__ == '__main__':
    unittest.main()
