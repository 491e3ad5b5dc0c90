"""
Browser sessions for the automation runs.

One Chrome process per session, driven through Selenium. Every page gets the
navigation guard so an external-protocol link (mailto:, tel:, custom app
schemes) or a popup can never stall a headless run on a native dialog.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from selenium import webdriver
from selenium.common.exceptions import (
    NoAlertPresentException,
    NoSuchElementException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.remote.webelement import WebElement
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import Select, WebDriverWait
from webdriver_manager.chrome import ChromeDriverManager

from ..utils.error_handler import NavigationError, PortalTimeoutError
from .proxy import ProxyDescriptor, ProxyResolver

logger = logging.getLogger(__name__)

BLOCKED_BUFFER = "__rpaBlockedNavigations"

GUARD_SCRIPT = r"""
(() => {
  if (window.__rpaGuardInstalled) return;
  window.__rpaGuardInstalled = true;
  window.__rpaBlockedNavigations = window.__rpaBlockedNavigations || [];
  const ALLOWED = new Set(['http:', 'https:', 'data:', 'about:', 'blob:', 'javascript:']);
  const record = (kind, target) => {
    try { window.__rpaBlockedNavigations.push({kind: kind, target: String(target), at: Date.now()}); } catch (e) {}
  };
  const isBlocked = (url) => {
    if (url === undefined || url === null || url === '') return false;
    try {
      return !ALLOWED.has(new URL(String(url), window.location.href).protocol);
    } catch (e) {
      return false;
    }
  };
  const sanitize = (el) => {
    if (!el || !el.getAttribute) return;
    if (el.tagName === 'A' || el.tagName === 'AREA') {
      if (isBlocked(el.getAttribute('href'))) { record('href', el.getAttribute('href')); el.setAttribute('href', '#'); }
      if (el.getAttribute('target') === '_blank') el.removeAttribute('target');
    } else if (el.tagName === 'FORM') {
      if (isBlocked(el.getAttribute('action'))) { record('form', el.getAttribute('action')); el.setAttribute('action', 'about:blank'); }
      if (el.getAttribute('target') === '_blank') el.removeAttribute('target');
    } else if (el.tagName === 'IFRAME' || el.tagName === 'FRAME') {
      if (isBlocked(el.getAttribute('src'))) { record('frame', el.getAttribute('src')); el.setAttribute('src', 'about:blank'); }
    }
  };

  window.open = function(url, name, features) {
    if (isBlocked(url)) { record('window.open', url); return null; }
    // Keep everything in the current tab; popups are invisible to the driver
    record('popup', url);
    if (url) window.location.assign(url);
    return window;
  };

  const loc = window.Location && window.Location.prototype;
  if (loc) {
    const nativeAssign = loc.assign;
    const nativeReplace = loc.replace;
    loc.assign = function(url) { if (isBlocked(url)) { record('location.assign', url); return; } return nativeAssign.call(this, url); };
    loc.replace = function(url) { if (isBlocked(url)) { record('location.replace', url); return; } return nativeReplace.call(this, url); };
    const hrefDesc = Object.getOwnPropertyDescriptor(loc, 'href');
    if (hrefDesc && hrefDesc.set && hrefDesc.configurable) {
      Object.defineProperty(loc, 'href', {
        get: hrefDesc.get,
        set: function(url) { if (isBlocked(url)) { record('location.href', url); return; } hrefDesc.set.call(this, url); },
        configurable: true,
      });
    }
  }

  const guardSetter = (proto, prop, kind) => {
    const desc = proto && Object.getOwnPropertyDescriptor(proto, prop);
    if (!desc || !desc.set || !desc.configurable) return;
    Object.defineProperty(proto, prop, {
      get: desc.get,
      set: function(value) { if (isBlocked(value)) { record(kind, value); return; } desc.set.call(this, value); },
      configurable: true,
    });
  };
  guardSetter(window.HTMLAnchorElement && HTMLAnchorElement.prototype, 'href', 'href');
  guardSetter(window.HTMLFormElement && HTMLFormElement.prototype, 'action', 'form');
  guardSetter(window.HTMLIFrameElement && HTMLIFrameElement.prototype, 'src', 'frame');

  const nativeSetAttribute = Element.prototype.setAttribute;
  Element.prototype.setAttribute = function(name, value) {
    const attr = String(name).toLowerCase();
    if ((attr === 'href' || attr === 'action' || attr === 'src') && isBlocked(value)) {
      record('setAttribute', value);
      return nativeSetAttribute.call(this, name, attr === 'href' ? '#' : 'about:blank');
    }
    return nativeSetAttribute.call(this, name, value);
  };

  const onClick = (event) => {
    const anchor = event.target && event.target.closest ? event.target.closest('a,area') : null;
    if (!anchor) return;
    const href = anchor.getAttribute('href');
    if (isBlocked(href)) {
      event.preventDefault();
      event.stopImmediatePropagation();
      record('click', href);
      anchor.setAttribute('href', '#');
    } else if (anchor.getAttribute('target') === '_blank') {
      anchor.removeAttribute('target');
    }
  };
  document.addEventListener('click', onClick, true);
  document.addEventListener('auxclick', onClick, true);
  document.addEventListener('submit', (event) => {
    const form = event.target;
    if (form && isBlocked(form.getAttribute('action'))) {
      event.preventDefault();
      event.stopImmediatePropagation();
      record('submit', form.getAttribute('action'));
    }
  }, true);

  if (navigator.registerProtocolHandler) {
    navigator.registerProtocolHandler = function(scheme) { record('registerProtocolHandler', scheme); };
  }

  const sweep = (root) => {
    if (!root || !root.querySelectorAll) return;
    sanitize(root);
    root.querySelectorAll('a[href],area[href],form[action],iframe[src],frame[src],[target="_blank"]').forEach(sanitize);
  };
  const start = () => {
    sweep(document.documentElement);
    new MutationObserver((mutations) => {
      for (const m of mutations) {
        if (m.type === 'attributes') sanitize(m.target);
        m.addedNodes && m.addedNodes.forEach(sweep);
      }
    }).observe(document.documentElement, {
      subtree: true, childList: true, attributes: true, attributeFilter: ['href', 'action', 'src', 'target'],
    });
  };
  if (document.documentElement) start(); else document.addEventListener('DOMContentLoaded', start);
})();
"""


def default_driver_factory(options: Options):
    service = Service(ChromeDriverManager().install())
    return webdriver.Chrome(service=service, options=options)


@dataclass
class Session:
    driver: Any
    proxy: Optional[ProxyDescriptor] = None
    pages: list["Page"] = field(default_factory=list)
    spare_handle: Optional[str] = None
    closed: bool = False
    # Called at every settle and wait poll; raising from it aborts the step
    step_hook: Optional[Callable[[], None]] = None


def xpath_literal(text: str) -> str:
    """Quote text for an XPath expression; XPath 1.0 has no escape, so a
    value holding both quote kinds is built with concat()."""
    if "'" not in text:
        return f"'{text}'"
    if '"' not in text:
        return f'"{text}"'
    parts = text.split("'")
    return "concat(" + ", \"'\", ".join(f"'{p}'" for p in parts) + ")"


class Page:
    """One browser tab. Selenium drives a single active window, so every
    operation switches to this tab's handle first."""

    def __init__(self, session: Session, handle: str, timeout: int = 30, step_delay: float = 1.0) -> None:
        self.session = session
        self.driver = session.driver
        self.handle = handle
        self.timeout = timeout
        self.step_delay = step_delay
        self.closed = False

    def activate(self) -> "Page":
        if self.driver.current_window_handle != self.handle:
            self.driver.switch_to.window(self.handle)
        return self

    def goto(self, url: str) -> None:
        self.activate()
        try:
            self.driver.get(url)
        except TimeoutException as exc:
            raise PortalTimeoutError(f"timed out loading {url}") from exc
        except WebDriverException as exc:
            raise NavigationError(f"could not load {url}: {exc.msg}") from exc
        self.drain_blocked()

    @property
    def url(self) -> str:
        return self.activate().driver.current_url

    def checkpoint(self) -> None:
        hook = getattr(self.session, "step_hook", None)
        if hook is not None:
            hook()

    def settle(self, seconds: Optional[float] = None) -> None:
        self.checkpoint()
        time.sleep(self.step_delay if seconds is None else seconds)
        self.checkpoint()

    def _until(self, condition: Callable[[Any], Any], timeout: Optional[int] = None) -> Any:
        def poll(driver):
            self.checkpoint()
            return condition(driver)

        return WebDriverWait(self.driver, timeout or self.timeout).until(poll)

    def wait_for(self, selector: str, timeout: Optional[int] = None, visible: bool = True) -> WebElement:
        self.activate()
        condition = EC.visibility_of_element_located if visible else EC.presence_of_element_located
        try:
            return self._until(condition((By.CSS_SELECTOR, selector)), timeout)
        except TimeoutException as exc:
            raise PortalTimeoutError(f"timed out waiting for {selector}") from exc

    def wait_for_any(self, selectors: list[str], timeout: Optional[int] = None) -> tuple[str, WebElement]:
        """First selector of the list that becomes visible."""
        self.activate()

        def _first_visible(driver):
            for sel in selectors:
                for el in driver.find_elements(By.CSS_SELECTOR, sel):
                    if el.is_displayed():
                        return sel, el
            return False

        try:
            return self._until(_first_visible, timeout)
        except TimeoutException as exc:
            raise PortalTimeoutError(f"timed out waiting for any of {selectors}") from exc

    def query(self, selector: str) -> Optional[WebElement]:
        self.activate()
        try:
            return self.driver.find_element(By.CSS_SELECTOR, selector)
        except NoSuchElementException:
            return None

    def query_all(self, selector: str) -> list[WebElement]:
        return self.activate().driver.find_elements(By.CSS_SELECTOR, selector)

    def first_visible(self, selectors: list[str]) -> Optional[WebElement]:
        for sel in selectors:
            for el in self.query_all(sel):
                if el.is_displayed():
                    return el
        return None

    def xpath(self, expression: str) -> list[WebElement]:
        return self.activate().driver.find_elements(By.XPATH, expression)

    def click(self, selector: str, timeout: Optional[int] = None) -> None:
        self.activate()
        try:
            el = self._until(EC.element_to_be_clickable((By.CSS_SELECTOR, selector)), timeout)
        except TimeoutException as exc:
            raise PortalTimeoutError(f"timed out waiting to click {selector}") from exc
        el.click()
        self.drain_blocked()

    def click_text(self, text: str, tags: str = "a|button|input|span|td|li|div", exact: bool = False) -> bool:
        """Click the first visible element whose text (or value) matches."""
        for tag in tags.split("|"):
            if exact:
                expr = f"//{tag}[normalize-space(.)={xpath_literal(text)} or @value={xpath_literal(text)}]"
            else:
                lowered = xpath_literal(text.lower())
                expr = (
                    f"//{tag}[contains(translate(normalize-space(.), 'ABCDEFGHIJKLMNOPQRSTUVWXYZ', "
                    f"'abcdefghijklmnopqrstuvwxyz'), {lowered}) or contains(translate(@value, "
                    f"'ABCDEFGHIJKLMNOPQRSTUVWXYZ', 'abcdefghijklmnopqrstuvwxyz'), {lowered})]"
                )
            for el in self.xpath(expr):
                if el.is_displayed():
                    el.click()
                    self.drain_blocked()
                    return True
        return False

    def fill(self, selector: str, value: str, timeout: Optional[int] = None) -> None:
        el = self.wait_for(selector, timeout)
        el.clear()
        el.send_keys(str(value))

    def fill_element(self, el: WebElement, value: str) -> None:
        el.clear()
        el.send_keys(str(value))

    def select_by_label(self, el: WebElement, label: str) -> None:
        Select(el).select_by_visible_text(label)

    def option_labels(self, el: WebElement) -> list[str]:
        return [opt.text.strip() for opt in Select(el).options if opt.text.strip()]

    def text(self, selector: str = "body") -> str:
        el = self.query(selector)
        return el.text if el is not None else ""

    def has_text(self, text: str) -> bool:
        return text.lower() in self.text("body").lower()

    def evaluate(self, script: str, *args: Any) -> Any:
        return self.activate().driver.execute_script(script, *args)

    def accept_dialog(self) -> Optional[str]:
        """Accept a pending alert/confirm and return its message."""
        self.activate()
        try:
            alert = self.driver.switch_to.alert
        except NoAlertPresentException:
            return None
        message = alert.text
        alert.accept()
        logger.info("accepted dialog: %s", message)
        return message

    def install_guard(self) -> None:
        self.activate()
        self.driver.execute_cdp_cmd("Page.addScriptToEvaluateOnNewDocument", {"source": GUARD_SCRIPT})
        self.driver.execute_script(GUARD_SCRIPT)

    def drain_blocked(self) -> list[dict]:
        """Pull and log navigations the guard blocked since the last drain."""
        try:
            blocked = self.driver.execute_script(
                f"const b = window.{BLOCKED_BUFFER} || []; window.{BLOCKED_BUFFER} = []; return b;"
            ) or []
        except WebDriverException:
            return []
        for entry in blocked:
            logger.warning("navigation guard blocked %s -> %s", entry.get("kind"), entry.get("target"))
        return blocked


class BrowserSessionManager:
    def __init__(self, config, proxy_resolver: Optional[ProxyResolver] = None,
                 driver_factory: Optional[Callable[[Options], Any]] = None) -> None:
        self.config = config
        self.proxy_resolver = proxy_resolver or ProxyResolver.from_config(config)
        self.driver_factory = driver_factory or default_driver_factory

    def build_options(self, proxy: Optional[ProxyDescriptor]) -> Options:
        options = Options()
        if self.config.headless:
            options.add_argument("--headless=new")
        options.add_argument("--disable-notifications")
        options.add_argument("--disable-infobars")
        options.add_argument("--disable-popup-blocking")
        options.add_argument("--disable-blink-features=AutomationControlled")
        options.add_argument("--no-default-browser-check")
        options.add_argument("--window-size=1440,900")
        options.add_experimental_option("excludeSwitches", ["enable-logging"])
        if proxy is not None:
            options.add_argument(f"--proxy-server={proxy.server}")
            if proxy.has_credentials:
                options.enable_bidi = True
        return options

    def open(self) -> Session:
        proxy = self.proxy_resolver.resolve()
        options = self.build_options(proxy)
        try:
            driver = self.driver_factory(options)
        except WebDriverException as exc:
            raise NavigationError(f"failed to start Chrome: {exc.msg}", run_fatal=True) from exc
        driver.set_page_load_timeout(self.config.page_timeout_seconds)
        if proxy is not None and proxy.has_credentials:
            driver.network.add_auth_handler(proxy.username, proxy.password or "")
        session = Session(driver=driver, proxy=proxy, spare_handle=driver.current_window_handle)
        logger.info("browser session opened (proxy=%s)", proxy.endpoint if proxy else "none")
        return session

    def new_page(self, session: Session) -> Page:
        if session.closed:
            raise NavigationError("session already closed")
        if session.spare_handle is not None:
            # The tab Chrome starts with becomes the first page
            handle, session.spare_handle = session.spare_handle, None
            session.driver.switch_to.window(handle)
        else:
            session.driver.switch_to.new_window("tab")
            handle = session.driver.current_window_handle
        page = Page(session, handle, self.config.page_timeout_seconds, self.config.step_delay_seconds)
        page.install_guard()
        session.pages.append(page)
        return page

    def close_stray_windows(self, session: Session) -> int:
        known = {p.handle for p in session.pages if not p.closed}
        if session.spare_handle is not None:
            known.add(session.spare_handle)
        closed = 0
        for handle in list(session.driver.window_handles):
            if handle in known:
                continue
            try:
                session.driver.switch_to.window(handle)
                session.driver.close()
                closed += 1
                logger.warning("closed stray browser window %s", handle)
            except WebDriverException as exc:
                logger.warning("could not close stray window %s: %s", handle, exc)
        remaining = [p for p in session.pages if not p.closed]
        if closed and remaining:
            session.driver.switch_to.window(remaining[0].handle)
        return closed

    def close(self, session: Session) -> None:
        if session.closed:
            return
        for page in session.pages:
            if page.closed:
                continue
            try:
                session.driver.switch_to.window(page.handle)
                session.driver.close()
            except WebDriverException as exc:
                logger.warning("error closing page %s: %s", page.handle, exc)
            finally:
                page.closed = True
        try:
            session.driver.quit()
        except WebDriverException as exc:
            logger.warning("error quitting browser: %s", exc)
        finally:
            session.closed = True
            logger.info("browser session closed")
