import unittest
from unittest.mock import patch

from tests.base import ApiTestCase
from utils.enrollment_utils import progress_percentage, effective_price


class TestProgressHelpers(unittest.TestCase):
    def test_percentage_rounds_halves_up(self):
        self.assertEqual(progress_percentage(1, 3), 33)
        self.assertEqual(progress_percentage(2, 3), 67)
        self.assertEqual(progress_percentage(1, 8), 13)
        self.assertEqual(progress_percentage(3, 3), 100)

    def test_percentage_of_empty_course_is_zero(self):
        self.assertEqual(progress_percentage(0, 0), 0)

    def test_effective_price_prefers_discount(self):
        self.assertEqual(effective_price({'price': 500000, 'discount_price': 300000}), 300000)
        self.assertEqual(effective_price({'price': 500000, 'discount_price': None}), 500000)
        self.assertEqual(effective_price({'price': 0, 'discount_price': 0}), 0)


class TestFreeEnrollment(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.student_id = self.create_user()
        self.free_course = self.create_course(title='Free Course')
        self.paid_course = self.create_course(title='Paid Course', price=200000)

    def test_check_enrollment(self):
        url = f'/api/courses/{self.free_course}/check-enrollment'
        body = self.client.get(url, headers=self.auth(self.student_id)).get_json()
        self.assertFalse(body['isEnrolled'])
        self.assertIsNone(body['enrollmentData'])

        self.enroll(self.student_id, self.free_course)
        body = self.client.get(url, headers=self.auth(self.student_id)).get_json()
        self.assertTrue(body['isEnrolled'])
        self.assertEqual(body['enrollmentData']['course_id'], self.free_course)

    def test_free_enrollment_creates_enrollment_and_transaction(self):
        response = self.client.post(f'/api/courses/{self.free_course}/enroll/free', headers=self.auth(self.student_id))
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['enrollment']['status'], 'active')

        transaction = self.query_one('SELECT * FROM payment_transactions WHERE user_id = ?', (self.student_id,))
        self.assertEqual(transaction['payment_method'], 'free')
        self.assertEqual(transaction['payment_status'], 'completed')
        self.assertEqual(transaction['amount'], 0)
        self.assertTrue(transaction['transaction_code'].startswith('FREE-'))
        self.assertIsNotNone(transaction['payment_date'])

        course = self.query_one('SELECT enrolled_count FROM courses WHERE id = ?', (self.free_course,))
        self.assertEqual(course['enrolled_count'], 1)
        notification = self.query_one('SELECT * FROM notifications WHERE user_id = ?', (self.student_id,))
        self.assertEqual(notification['type'], 'enrollment')

    def test_free_enrollment_twice_is_rejected(self):
        url = f'/api/courses/{self.free_course}/enroll/free'
        self.client.post(url, headers=self.auth(self.student_id))
        response = self.client.post(url, headers=self.auth(self.student_id))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(len(self.query('SELECT * FROM enrollments')), 1)

    def test_paid_or_unknown_course_is_not_free(self):
        response = self.client.post(f'/api/courses/{self.paid_course}/enroll/free', headers=self.auth(self.student_id))
        self.assertEqual(response.status_code, 404)
        response = self.client.post('/api/courses/9999/enroll/free', headers=self.auth(self.student_id))
        self.assertEqual(response.status_code, 404)

    def test_discount_to_zero_makes_course_free(self):
        course_id = self.create_course(title='Promo', price=100000, discount_price=0)
        # A zero discount is "no discount", so the list price still applies
        response = self.client.post(f'/api/courses/{course_id}/enroll/free', headers=self.auth(self.student_id))
        self.assertEqual(response.status_code, 404)

    def test_concurrent_free_enrollment_reports_already_enrolled(self):
        self.enroll(self.student_id, self.free_course)
        # Both lookups miss, as they would for a request racing another one
        with patch('blueprints.enrollment_routes.find_enrollment', return_value=None), \
                patch('utils.enrollment_utils.find_enrollment', return_value=None):
            response = self.client.post(f'/api/courses/{self.free_course}/enroll/free',
                                        headers=self.auth(self.student_id))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()['message'], 'You are already enrolled in this course')
        self.assertEqual(self.query('SELECT * FROM payment_transactions'), [])

    def test_cancelled_enrollment_is_reactivated(self):
        module_id = self.create_module(self.free_course)
        first = self.create_lesson(self.free_course, module_id, title='One')
        self.create_lesson(self.free_course, module_id, title='Two', order_index=2)
        enrollment_id = self.enroll(self.student_id, self.free_course, status='cancelled', progress=100)
        self.execute("INSERT INTO lesson_progress (enrollment_id, lesson_id, status) VALUES (?, ?, 'completed')",
                     (enrollment_id, first))

        response = self.client.post(f'/api/courses/{self.free_course}/enroll/free', headers=self.auth(self.student_id))
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['enrollment']['progress'], 50)
        rows = self.query('SELECT status FROM enrollments WHERE user_id = ?', (self.student_id,))
        self.assertEqual(rows, [{'status': 'active'}])

        course = self.query_one('SELECT enrolled_count FROM courses WHERE id = ?', (self.free_course,))
        self.assertEqual(course['enrolled_count'], 1)
        notification = self.query_one("SELECT * FROM notifications WHERE user_id = ? AND type = 'enrollment'",
                                       (self.student_id,))
        self.assertIsNotNone(notification)

    def test_user_enrollments_lists_courses_with_counts(self):
        module_id = self.create_module(self.free_course)
        self.create_lesson(self.free_course, module_id)
        self.enroll(self.student_id, self.free_course)
        self.enroll(self.student_id, self.paid_course, status='cancelled')

        body = self.client.get('/api/user/enrollments', headers=self.auth(self.student_id)).get_json()
        self.assertEqual([row['title'] for row in body['enrollments']], ['Free Course'])
        self.assertEqual(body['enrollments'][0]['total_lessons'], 1)
        self.assertEqual(body['enrollments'][0]['completed_lessons'], 0)


class TestLessonProgress(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.teacher_id = self.create_user(email='teacher@example.com', role='TEACHER')
        self.student_id = self.create_user()
        self.course_id = self.create_course(self.teacher_id, title='Three Lessons')
        self.module_id = self.create_module(self.course_id)
        self.lessons = [self.create_lesson(self.course_id, self.module_id, title=f'Lesson {i}', order_index=i)
                        for i in range(1, 4)]
        self.enrollment_id = self.enroll(self.student_id, self.course_id)

    def complete(self, lesson_id, **body):
        return self.client.post(f'/api/lessons/{lesson_id}/progress', json=body, headers=self.auth(self.student_id))

    def test_progress_climbs_to_completion(self):
        self.assertEqual(self.complete(self.lessons[0]).get_json()['progress'], 33)
        self.assertEqual(self.complete(self.lessons[1]).get_json()['progress'], 67)
        body = self.complete(self.lessons[2], timeSpent=120, lastPosition=45).get_json()
        self.assertEqual(body['progress'], 100)
        self.assertEqual(body['completedLessons'], self.lessons)

        enrollment = self.query_one('SELECT * FROM enrollments WHERE id = ?', (self.enrollment_id,))
        self.assertEqual(enrollment['status'], 'completed')
        self.assertIsNotNone(enrollment['completed_at'])
        self.assertEqual(enrollment['certificate_issued'], 1)
        self.assertEqual(enrollment['last_accessed_lesson_id'], self.lessons[2])

        progress_row = self.query_one('SELECT * FROM lesson_progress WHERE lesson_id = ?', (self.lessons[2],))
        self.assertEqual(progress_row['time_spent'], 120)
        self.assertEqual(progress_row['last_position'], 45)

        notification = self.query_one("SELECT * FROM notifications WHERE type = 'course_completed'")
        self.assertEqual(notification['user_id'], self.student_id)

    def test_completing_a_lesson_twice_is_idempotent(self):
        self.complete(self.lessons[0])
        body = self.complete(self.lessons[0]).get_json()
        self.assertEqual(body['progress'], 33)
        self.assertEqual(len(self.query('SELECT * FROM lesson_progress')), 1)

    def test_course_progress_summary(self):
        self.complete(self.lessons[1])
        body = self.client.get(f'/api/courses/{self.course_id}/progress', headers=self.auth(self.student_id)).get_json()
        self.assertEqual(body['overallProgress'], 33)
        self.assertEqual(body['completedLessons'], [self.lessons[1]])
        self.assertEqual(body['status'], 'active')
        self.assertEqual(body['lastAccessedLessonId'], self.lessons[1])

    def test_new_lesson_reopens_completed_enrollment(self):
        for lesson_id in self.lessons:
            self.complete(lesson_id)

        response = self.client.post(f'/api/teacher/modules/{self.module_id}/lessons', json={'title': 'Bonus'},
                                    headers=self.auth(self.teacher_id, 'TEACHER'))
        self.assertEqual(response.status_code, 201)

        enrollment = self.query_one('SELECT * FROM enrollments WHERE id = ?', (self.enrollment_id,))
        self.assertEqual(enrollment['progress'], 75)
        self.assertEqual(enrollment['status'], 'active')
        self.assertIsNone(enrollment['completed_at'])

    def test_progress_requires_enrollment_and_existing_lesson(self):
        other_id = self.create_user(email='other@example.com')
        response = self.client.post(f'/api/lessons/{self.lessons[0]}/progress', json={},
                                    headers=self.auth(other_id))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.complete(9999).status_code, 404)

        response = self.client.get(f'/api/courses/{self.course_id}/progress', headers=self.auth(other_id))
        self.assertEqual(response.status_code, 404)


if __name__ == '__main__':
    unittest.main()
