from locust import HttpUser, task, between
import uuid


class AgentUser(HttpUser):
    # Wait 1-3 seconds between clicks (simulates an agent in the inbox)
    wait_time = between(1, 3)

    def on_start(self):
        # One customer per simulated agent so cursors don't collide
        self.session = {
            "email": f"load-{uuid.uuid4().hex[:8]}@example.com",
            "name": "Load Test",
            "threadId": str(uuid.uuid4().int)[:12],
        }
        self.client.post("/api/initialize", json={"session": self.session})

    @task(3)
    def open_create_form(self):
        self.client.post("/api/submit", json={"actionId": "create_ticket", "session": self.session})

    @task(2)
    def browse_existing(self):
        self.client.post("/api/submit", json={"actionId": "add_to_existing_ticket", "session": self.session})
        self.client.post("/api/submit", json={"actionId": "load_more_tickets", "session": self.session})

    @task(1)
    def back_home(self):
        self.client.post("/api/submit", json={"actionId": "back_to_home", "session": self.session})
