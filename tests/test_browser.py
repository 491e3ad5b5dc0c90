import unittest
from unittest.mock import Mock

import requests
from selenium.common.exceptions import WebDriverException

from rpa_app.browser.proxy import ProxyDescriptor, ProxyFinder, ProxyResolver, ProxyValidator
from rpa_app.browser.session import GUARD_SCRIPT, BrowserSessionManager, xpath_literal
from rpa_app.utils.error_handler import NavigationError, ProcessInterrupted
from tests.helpers import make_config


def fake_driver():
    driver = Mock()
    driver.current_window_handle = "H0"
    driver.window_handles = ["H0"]
    opened = iter(["H1", "H2", "H3"])

    def new_window(kind):
        driver.current_window_handle = next(opened)
        driver.window_handles.append(driver.current_window_handle)

    driver.switch_to.new_window.side_effect = new_window
    driver.execute_script.return_value = []
    return driver


class TestSessionManager(unittest.TestCase):
    def setUp(self):
        self.driver = fake_driver()
        self.resolver = Mock()
        self.resolver.resolve.return_value = None
        self.manager = BrowserSessionManager(make_config(headless=True), proxy_resolver=self.resolver,
                                             driver_factory=lambda options: self.driver)

    def test_options(self):
        options = self.manager.build_options(ProxyDescriptor("1.2.3.4:8080"))
        self.assertIn("--headless=new", options.arguments)
        self.assertIn("--disable-popup-blocking", options.arguments)
        self.assertIn("--proxy-server=http://1.2.3.4:8080", options.arguments)

        options = self.manager.build_options(None)
        self.assertFalse(any(a.startswith("--proxy-server") for a in options.arguments))

    def test_first_page_reuses_initial_tab(self):
        session = self.manager.open()
        first = self.manager.new_page(session)
        second = self.manager.new_page(session)

        self.assertEqual((first.handle, second.handle), ("H0", "H1"))
        self.driver.switch_to.new_window.assert_called_once_with("tab")
        self.driver.execute_cdp_cmd.assert_called_with("Page.addScriptToEvaluateOnNewDocument", {"source": GUARD_SCRIPT})

    def test_driver_start_failure_is_run_fatal(self):
        def broken(options):
            raise WebDriverException("chrome not reachable")

        manager = BrowserSessionManager(make_config(), proxy_resolver=self.resolver, driver_factory=broken)
        with self.assertRaises(NavigationError) as ctx:
            manager.open()
        self.assertTrue(ctx.exception.run_fatal)

    def test_close_continues_after_page_error(self):
        session = self.manager.open()
        pages = [self.manager.new_page(session), self.manager.new_page(session)]
        self.driver.close.side_effect = [WebDriverException("tab crashed"), None]

        self.manager.close(session)

        self.assertEqual(self.driver.close.call_count, 2)
        self.driver.quit.assert_called_once()
        self.assertTrue(session.closed)
        self.assertTrue(all(p.closed for p in pages))
        with self.assertRaises(NavigationError):
            self.manager.new_page(session)

    def test_close_stray_windows(self):
        session = self.manager.open()
        self.manager.new_page(session)
        self.driver.window_handles = ["H0", "POPUP"]

        self.assertEqual(self.manager.close_stray_windows(session), 1)
        self.driver.switch_to.window.assert_called_with("H0")


class TestProxyFinder(unittest.TestCase):
    def test_candidates_filtered_and_cached(self):
        http = Mock()
        good = Mock()
        good.json.return_value = {"data": [
            {"ip": "1.1.1.1", "port": "8080", "country": "SG"},
            {"ip": "2.2.2.2", "port": 80, "country": "MY"},
            {"address": "3.3.3.3", "portNumber": 3128},
            {"bad": 1},
        ]}
        http.get.side_effect = [good, requests.ConnectionError("down")]
        finder = ProxyFinder(["https://a.test", "https://b.test"], country="sg", http=http, clock=lambda: 100.0)

        endpoints = [c.endpoint for c in finder.candidates()]
        self.assertEqual(endpoints, ["1.1.1.1:8080", "3.3.3.3:3128"])
        finder.candidates()
        self.assertEqual(http.get.call_count, 2)
        self.assertIsNone(finder.random_candidate(exclude=set(endpoints)))


class TestProxyValidator(unittest.TestCase):
    def check(self, response=None, error=None):
        http = Mock()
        if error is not None:
            http.get.side_effect = error
        else:
            http.get.return_value.json.return_value = response
        return ProxyValidator(country="SG", http=http).validate(ProxyDescriptor("1.1.1.1:8080", "u", "p"))

    def test_country(self):
        self.assertTrue(self.check({"ip": "1.1.1.1", "country": "sg"}))
        self.assertFalse(self.check({"ip": "1.1.1.1", "country": "MY"}))
        self.assertFalse(self.check(error=requests.Timeout("slow")))

    def test_credentials_in_proxy_url(self):
        proxies = ProxyDescriptor("1.1.1.1:8080", "u", "p").requests_proxies()
        self.assertEqual(proxies["https"], "http://u:p@1.1.1.1:8080")


class TestProxyResolver(unittest.TestCase):
    def test_configured_server_wins(self):
        resolver = ProxyResolver(mode="auto", server="10.0.0.1:3128", username="u", finder=Mock())
        proxy = resolver.resolve()
        self.assertEqual((proxy.endpoint, proxy.source), ("10.0.0.1:3128", "configured"))
        self.assertTrue(proxy.has_credentials)

    def test_off(self):
        self.assertIsNone(ProxyResolver(mode="off").resolve())

    def test_auto_tries_until_valid(self):
        first, second = ProxyDescriptor("1.1.1.1:80"), ProxyDescriptor("2.2.2.2:80")
        finder = Mock()
        finder.random_candidate.side_effect = [first, second]
        validator = Mock()
        validator.validate.side_effect = [False, True]

        self.assertIs(ProxyResolver(mode="auto", finder=finder, validator=validator).resolve(), second)

    def test_auto_exhausted_falls_back_to_none(self):
        finder = Mock()
        finder.random_candidate.side_effect = [ProxyDescriptor("1.1.1.1:80"), ProxyDescriptor("2.2.2.2:80"), None]
        validator = Mock()
        validator.validate.return_value = False

        self.assertIsNone(ProxyResolver(mode="auto", finder=finder, validator=validator, max_attempts=5).resolve())
        self.assertEqual(validator.validate.call_count, 2)


class TestPageSteps(unittest.TestCase):
    def setUp(self):
        resolver = Mock()
        resolver.resolve.return_value = None
        self.manager = BrowserSessionManager(make_config(), proxy_resolver=resolver,
                                             driver_factory=lambda options: fake_driver())
        self.session = self.manager.open()
        self.page = self.manager.new_page(self.session)

    def test_step_hook_runs_on_settle(self):
        hook = Mock()
        self.session.step_hook = hook
        self.page.settle(0)
        self.assertEqual(hook.call_count, 2)

    def test_interrupt_stops_settle_and_waits(self):
        self.session.step_hook = Mock(side_effect=ProcessInterrupted(15))

        with self.assertRaises(ProcessInterrupted):
            self.page.settle(0)
        with self.assertRaises(ProcessInterrupted):
            self.page.wait_for("#grid", timeout=1)
        with self.assertRaises(ProcessInterrupted):
            self.page.wait_for_any(["#a", "#b"], timeout=1)

    def test_xpath_literal_quotes(self):
        self.assertEqual(xpath_literal("TAN AH KOW"), "'TAN AH KOW'")
        self.assertEqual(xpath_literal("D'SOUZA MARIA"), '"D\'SOUZA MARIA"')
        self.assertEqual(xpath_literal("A'B\"C"), "concat('A', \"'\", 'B\"C')")
