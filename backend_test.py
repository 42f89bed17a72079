import os
import sys
from datetime import datetime, timedelta, timezone

import requests


class QuizAPITester:
    def __init__(self, base_url=os.getenv("LIVEQUIZ_URL", "http://localhost:8000")):
        self.base_url = base_url
        self.api_base = f"{base_url}/api"
        self.tests_run = 0
        self.tests_passed = 0
        self.token = None
        self.quiz_id = None
        self.user_id = f"smoke-{datetime.now().strftime('%H%M%S')}"

    def run_test(self, name, method, endpoint, expected_status, data=None, params=None, auth=False):
        """Run a single API test"""
        url = f"{self.api_base}{endpoint}"
        headers = {'Content-Type': 'application/json'}
        if auth and self.token:
            headers['Authorization'] = f"Bearer {self.token}"

        self.tests_run += 1
        print(f"\n🔍 Testing {name}...")
        print(f"   URL: {method} {url}")

        try:
            if method == 'GET':
                response = requests.get(url, headers=headers, params=params, timeout=10)
            elif method == 'POST':
                response = requests.post(url, json=data, headers=headers, timeout=10)

            success = response.status_code == expected_status
            if success:
                self.tests_passed += 1
                print(f"✅ Passed - Status: {response.status_code}")
                try:
                    return True, response.json()
                except ValueError:
                    return True, response.text
            else:
                print(f"❌ Failed - Expected {expected_status}, got {response.status_code}")
                try:
                    print(f"   Response: {response.json()}")
                except ValueError:
                    print(f"   Response: {response.text}")
                return False, {}

        except requests.exceptions.Timeout:
            print(f"❌ Failed - Request timeout")
            return False, {}
        except requests.exceptions.RequestException as e:
            print(f"❌ Failed - Error: {str(e)}")
            return False, {}

    def test_time_sync(self):
        success, response = self.run_test("Time Sync", "GET", "/time-sync", 200)
        if success:
            print(f"   Server time: {response.get('serverTime')}")
        return success

    def test_admin_login(self):
        success, response = self.run_test(
            "Admin Login",
            "POST",
            "/admin/login",
            200,
            data={
                "username": os.getenv("ADMIN_USERNAME", "admin"),
                "password": os.getenv("ADMIN_PASSWORD", "change-me"),
            },
        )
        if success:
            self.token = response.get("token")
        return success

    def test_create_quiz(self):
        """Schedule a short quiz a few minutes out"""
        scheduled = datetime.now(timezone.utc) + timedelta(minutes=10)
        quiz_data = {
            "title": "Smoke Test Quiz",
            "scheduledAt": scheduled.isoformat(),
            "timePerQuestion": 10,
            "questions": [
                {"text": "What is 2 + 2?", "options": ["3", "4", "5", "6"], "correctIndex": 1},
                {"text": "Capital of France?", "options": ["Rome", "Paris", "Berlin"], "correctIndex": 1},
            ],
        }
        success, response = self.run_test("Create Quiz", "POST", "/admin/quiz", 200, data=quiz_data, auth=True)
        if success:
            self.quiz_id = response.get("id")
            print(f"   Quiz ID: {self.quiz_id} ({response.get('status')})")
        return success

    def test_join_quiz(self):
        if not self.quiz_id:
            print("❌ Skipped - no quiz")
            return False
        success, response = self.run_test(
            "Join Quiz", "POST", f"/quiz/{self.quiz_id}/join", 200, data={"userId": self.user_id}
        )
        if success:
            print(f"   Accepted: {response.get('accepted')} {response.get('reason') or ''}")
        return success

    def test_answer_before_start(self):
        """Answers are refused until the quiz is live"""
        if not self.quiz_id:
            print("❌ Skipped - no quiz")
            return False
        success, response = self.run_test(
            "Answer Before Start",
            "POST",
            f"/quiz/{self.quiz_id}/answer",
            200,
            data={"userId": self.user_id, "questionIndex": 0, "selectedOption": 1},
        )
        return success and response.get("reason") == "quiz_not_live"

    def test_quiz_state(self):
        if not self.quiz_id:
            print("❌ Skipped - no quiz")
            return False
        success, response = self.run_test(
            "Quiz State", "GET", f"/quiz/{self.quiz_id}/state", 200, params={"userId": self.user_id}
        )
        if success:
            print(f"   Status: {response.get('status')}")
        return success

    def test_leaderboard(self):
        if not self.quiz_id:
            print("❌ Skipped - no quiz")
            return False
        success, response = self.run_test("Leaderboard", "GET", f"/quiz/{self.quiz_id}/leaderboard", 200)
        if success:
            print(f"   Final: {response.get('final')} entries: {len(response.get('leaderboard', []))}")
        return success

    def test_invalid_quiz(self):
        success, _ = self.run_test("Unknown Quiz State", "GET", "/quiz/does-not-exist/state", 404)
        return success


def main():
    print("🚀 Starting livequiz API smoke tests")
    print("=" * 50)

    tester = QuizAPITester()

    tests = [
        tester.test_time_sync,
        tester.test_admin_login,
        tester.test_create_quiz,
        tester.test_join_quiz,
        tester.test_answer_before_start,
        tester.test_quiz_state,
        tester.test_leaderboard,
        tester.test_invalid_quiz,
    ]

    for test in tests:
        test()

    print("\n" + "=" * 50)
    print(f"📊 Tests passed: {tester.tests_passed}/{tester.tests_run}")

    if tester.tests_passed == tester.tests_run:
        print("🎉 All tests passed!")
        return 0
    print("⚠️ Some tests failed")
    return 1


if __name__ == "__main__":
    sys.exit(main())
