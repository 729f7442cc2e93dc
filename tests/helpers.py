from datetime import date, timedelta

DAY_0 = date(2024, 3, 1)


class FakeClock:
    def __init__(self, today):
        self.today = today

    def __call__(self):
        return self.today

    def advance(self, days):
        self.today += timedelta(days=days)
