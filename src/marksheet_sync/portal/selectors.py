from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StudentFieldCandidates:
    """
    Where to look for one student-info field, in order: CSS selectors first, then label cells
    whose text contains the label (the value is read from the next sibling cell).
    """

    field: str
    selectors: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class PortalSelectors:
    """
    Results portals are ASP.NET web apps whose markup changes between releases.
    Keep all UI selectors/text hooks here for easy maintenance.
    """

    # Login
    username_input: str = "#txtUserName"
    password_input: str = "#txtPassword"
    challenge_input: str = "#txtimgcode"
    login_submit: str = "#btnLogIn"
    # Lower-cased fragments that mark an authentication page in the URL or title.
    auth_page_markers: tuple[str, ...] = ("login", "default.aspx")

    # Elements that only render for an authenticated user.
    post_login_indicators: tuple[str, ...] = (
        'a[href*="Logout.aspx"]',
        "#ctl00_lblWelcomeMessage",
        '[id*="Welcome"]',
        '[class*="welcome"]',
        "#ctl00_ContentPlaceHolder1_StudentNameLabel",
        'a[href*="Marksheet.aspx"]',
    )

    # Validation/error output on a rejected login.
    login_error_selectors: tuple[str, ...] = (
        ".error",
        ".alert",
        ".message",
        '[id*="error"]',
        '[id*="Error"]',
        '[class*="error"]',
        '[class*="Error"]',
        'span[style*="color: red"]',
        'td[style*="color:red"]',
        ".validation-summary-errors",
    )

    # Stabilization: async loading hints.
    loading_text_patterns: tuple[str, ...] = (
        "loading",
        "please wait",
        "processing",
        "fetching",
        "retrieving",
        "generating",
        "calculating",
    )
    loading_element_selectors: tuple[str, ...] = (
        ".loading",
        ".spinner",
        ".loader",
        '[class*="loading"]',
        '[id*="loading"]',
        '[class*="spinner"]',
        '[id*="spinner"]',
        '[style*="cursor:wait"]',
        '[aria-busy="true"]',
        "#updateProgress",
        "#ajaxLoader",
        ".blockUI",
    )

    # Records page content check.
    records_table_selector: str = (
        'table[id*="GridviewMarks"], table[id*="gvMarks"], table[id*="MarksTable"], table[class*="marks-table"]'
    )
    records_heading_selector: str = 'h1, h2, h3, h4, span[id*="lblPageTitle"]'
    records_heading_texts: tuple[str, ...] = ("Academic Results", "My Grades", "Marks", "Academic Transcripts")
    records_body_required_phrase: str = "course code"
    records_body_any_phrases: tuple[str, ...] = ("total marks", "final grade", "credits acquired")

    # Interaction on the records page (term/year dropdowns, then a "View" button).
    view_button_selector: str = 'input[type="submit"], button'
    view_button_keywords: tuple[str, ...] = ("view", "show", "display", "get", "submit", "generate")
    view_button_excluded_keywords: tuple[str, ...] = ("cancel",)

    # Student info
    student_fields: tuple[StudentFieldCandidates, ...] = (
        StudentFieldCandidates(
            field="name",
            selectors=("#lblStudentName", "#studentName", '[id*="StudentNameField"]', ".profile-info strong:first-child"),
            labels=("Student Name",),
        ),
        StudentFieldCandidates(
            field="registration_id",
            selectors=("#lblRegNo", "#regNo", '[id*="RegNoField"]', ".profile-info strong:nth-child(2)"),
            labels=("Registration No", "Reg. No", "Student ID"),
        ),
        StudentFieldCandidates(
            field="program",
            selectors=("#lblProgram", '[id*="ProgramField"]'),
            labels=("Program",),
        ),
        StudentFieldCandidates(
            field="faculty",
            selectors=("#lblFaculty", '[id*="FacultyField"]'),
            labels=("Faculty",),
        ),
    )
