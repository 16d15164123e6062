"""
Employee Directory Module

The employee directory is owned by the payroll system; the loan engine only
asks whether an employee exists and may borrow.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional


class EmployeeDirectory(ABC):
    """Abstract interface for employee identity and eligibility checks"""

    @abstractmethod
    def employee_exists(self, employee_id: str) -> bool:
        """Check if an employee is known"""
        pass

    def is_eligible(self, employee_id: str) -> bool:
        """Check if an employee may receive a loan or advance"""
        return self.employee_exists(employee_id)


class InMemoryEmployeeDirectory(EmployeeDirectory):
    """In-memory directory for tests and batch jobs"""

    def __init__(self, employee_ids: Optional[Iterable[str]] = None):
        self._lock = threading.Lock()
        self._employees: Dict[str, bool] = {}
        for employee_id in employee_ids or []:
            self._employees[employee_id] = True

    def add_employee(self, employee_id: str, eligible: bool = True) -> None:
        with self._lock:
            self._employees[employee_id] = eligible

    def employee_exists(self, employee_id: str) -> bool:
        with self._lock:
            return employee_id in self._employees

    def is_eligible(self, employee_id: str) -> bool:
        with self._lock:
            return self._employees.get(employee_id, False)
